from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, Optional

from pairchat.client.session import ClientSession, ConnectionStatus
from pairchat.core.errors import NotConnectedError
from pairchat.core.proto import EnvelopeType

log = logging.getLogger("pairchat.cmd.client")

HELP = "Commands: /join <chatId>, /online <userId>, /typing, /reconnect, /quit"


class ClientApp:
    def __init__(self, server_url: str, token: str, user_id: str, chat_id: Optional[str] = None) -> None:
        self.user_id = user_id
        self.chat_id = chat_id
        self.other_user_id: Optional[str] = None
        self.session = ClientSession(server_url, token, self._handle_incoming)
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        if not await self.session.connect():
            print(f"Could not connect to {self.session.url}")
            return
        try:
            await self.session.wait_for_status(ConnectionStatus.CONNECTED)
            if self.chat_id:
                await self.session.join(self.chat_id)
            await self._command_loop()
        finally:
            self.stop_event.set()
            await self.session.disconnect()

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"pairchat client ready. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                if line.startswith("/"):
                    await self._handle_command(line)
                else:
                    await self._cmd_say(line)
            except NotConnectedError as exc:
                print(f"[{self.session.status.value}] {exc.message}")

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/join" and len(parts) == 2:
            self.chat_id = parts[1]
            await self.session.join(self.chat_id)
        elif cmd == "/online" and len(parts) == 2:
            self.other_user_id = parts[1]
            self.session.start_presence_poll(self.user_id, self.other_user_id)
        elif cmd == "/typing":
            if not self._require_chat():
                return
            await self.session.set_typing(self.chat_id, self.user_id)
        elif cmd == "/reconnect":
            await self.session.reconnect()
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(f"Unknown command. {HELP}")

    async def _cmd_say(self, text: str) -> None:
        if not self._require_chat():
            return
        await self.session.send_chat(self.chat_id, self.user_id, text)

    def _require_chat(self) -> bool:
        if self.chat_id:
            return True
        print("No chat selected. Use /join <chatId> first.")
        return False

    def _handle_incoming(self, frame: Dict[str, Any]) -> None:
        typ = str(frame.get("type", "")).lower()
        payload = frame.get("payload") or {}
        if typ == EnvelopeType.CONNECTION.value:
            print(f"[connected as {payload.get('userId')}]")
        elif typ == EnvelopeType.CHAT.value:
            self._print_message(payload.get("message") or {})
        elif typ == EnvelopeType.TYPING.value:
            if payload.get("isTyping"):
                print(f"[{payload.get('userId')} is typing...]")
        elif typ == EnvelopeType.ONLINE.value:
            state = "online" if payload.get("online") else f"offline (last seen {payload.get('lastSeen') or 'never'})"
            print(f"[{payload.get('userId')} is {state}]")
        elif typ == EnvelopeType.ERROR.value:
            print(f"ERROR ({payload.get('code')}): {payload.get('message')}")
        else:
            log.debug("Unhandled frame %s", typ)

    def _print_message(self, message: Dict[str, Any]) -> None:
        sender = message.get("senderId")
        who = "me" if sender == self.user_id else sender
        print(f"[{message.get('createdAt', '')}] {who}: {message.get('content', '')}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="pairchat client")
    parser.add_argument("--server", required=True, help="ws://host:port of pairchat server")
    parser.add_argument("--token", required=True, help="Signed credential (see scripts/gen_user.py)")
    parser.add_argument("--user-id", required=True, help="Your user id; sent as senderId/userId")
    parser.add_argument("--chat", default=None, help="Chat id to join on connect")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = ClientApp(args.server, args.token, args.user_id, args.chat)
    await app.run()


def cli(argv: list[str] | None = None) -> None:
    asyncio.run(main(argv))


if __name__ == "__main__":
    cli()

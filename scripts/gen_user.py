#!/usr/bin/env python3
import argparse
import asyncio
import os
from pathlib import Path

from pairchat.core import crypto
from pairchat.core.store import SqliteStore
from pairchat.server.config import load_config


async def _seed(args, db_path: str, secret: str, ttl_secs: int) -> None:
    store = await SqliteStore(db_path).open()
    try:
        user = await store.find_user_by_name(args.username)
        if user is None:
            user = await store.create_user(args.email or f"{args.username}@example.com", args.username)
            print(f"Created user {user.username} with id {user.id} in {db_path}")
        else:
            print(f"User {user.username} already exists with id {user.id}")

        if args.chat_with:
            other = await store.find_user_by_name(args.chat_with)
            if other is None:
                raise SystemExit(f"No such user: {args.chat_with}")
            chat = await store.find_chat_between(user.id, other.id)
            if chat is None:
                chat = await store.create_chat(user.id, other.id)
            print(f"Chat with {other.username}: {chat.id}")

        print(f"Token (valid {ttl_secs}s): {crypto.issue_token(user.id, secret, ttl_secs=ttl_secs)}")
    finally:
        await store.close()


def main():
    ap = argparse.ArgumentParser(description="Seed a pairchat user and print a credential")
    ap.add_argument("--username", required=True)
    ap.add_argument("--email", default=None)
    ap.add_argument("--chat-with", default=None, help="Existing username to open a chat with")
    ap.add_argument("--config", default=None, help="Server YAML config (db_path, jwt_secret, token_ttl_secs)")
    ap.add_argument("--db", default=None, help="Overrides db_path from the config")
    ap.add_argument("--secret", default=None, help="Overrides jwt_secret from the config")
    args = ap.parse_args()

    env = dict(os.environ)
    if args.secret:
        env["PAIRCHAT_JWT_SECRET"] = args.secret
    if args.db:
        env["PAIRCHAT_DB_PATH"] = args.db
    cfg = load_config(Path(args.config) if args.config else None, env)

    asyncio.run(_seed(args, cfg.db_path, cfg.jwt_secret, cfg.token_ttl_secs))


if __name__ == "__main__":
    main()

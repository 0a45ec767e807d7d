from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from pairchat.server.config import load_config
from pairchat.server.runtime import ServerRuntime

log = logging.getLogger("pairchat.cmd.server")


async def _run(config_path: Optional[Path], stop_event: Optional[asyncio.Event] = None) -> None:
    config = load_config(config_path)
    runtime = ServerRuntime(config)
    await runtime.start()
    log.info(
        "pairchat serving ws://%s:%d (store %s, heartbeat %ss)",
        runtime.listen_host,
        runtime.bound_port,
        config.db_path,
        config.heartbeat_secs,
    )

    if stop_event is None:
        stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            break
        installed.append(sig)

    try:
        await stop_event.wait()
        log.info("Shutdown requested; closing %d live connection(s)", len(runtime.registry))
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await runtime.stop()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="pairchat realtime server")
    parser.add_argument("--config", default=None, help="Path to server YAML config")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config_path = Path(args.config) if args.config else None
    asyncio.run(_run(config_path))


if __name__ == "__main__":
    main()

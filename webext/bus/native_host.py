"""Native messaging helper process.

The browser launches this process when the extension connects to the native
application; frames flow over stdin/stdout until the browser closes stdin.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

from .config import BusConfig
from .host_app import HostApplication, NativeLogHandler


def _log_level(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip().upper()
    level = logging.getLevelName(raw) if raw else default
    return level if isinstance(level, int) else default


async def _serve(config: BusConfig) -> int:
    app = HostApplication(config=config)
    console = NativeLogHandler(app, level=_log_level("WEBEXT_CONSOLE_LEVEL", logging.WARNING))
    root = logging.getLogger()
    root.addHandler(console)
    try:
        return await app.run()
    finally:
        root.removeHandler(console)
        app.close()


def main() -> None:
    # Native messaging requires strict stdout framing. Never write logs to stdout.
    logging.basicConfig(
        level=_log_level("WEBEXT_LOG_LEVEL", logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    try:
        raise SystemExit(asyncio.run(_serve(BusConfig.from_env())))
    except KeyboardInterrupt:
        raise SystemExit(0) from None


if __name__ == "__main__":
    main()

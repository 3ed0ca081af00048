"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv

from .app import ThreadRelayApp
from .config import TOKEN_KEY, load_settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Relay Discord thread messages to channels")
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to an env file with DISCORD_TOKEN and THREAD_MAPPING_* (default: .env)",
    )
    parser.add_argument(
        "--debug",
        "-debug",
        action="store_true",
        help="Enable debug logging (same as RELAY_DEBUG=on)",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    env_file = Path(args.env_file)
    if env_file.is_file():
        load_dotenv(env_file)

    settings = load_settings()
    debug = args.debug or settings.debug
    log_level = logging.DEBUG if debug else getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    if not settings.discord_token:
        parser.error(f"{TOKEN_KEY} must be set in the environment or the env file")

    app = ThreadRelayApp(settings)
    if debug:
        logging.getLogger(__name__).debug("Debug logging enabled")
    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Stopped by user request")


if __name__ == "__main__":
    main()

from __future__ import annotations

import asyncio

from dotenv import load_dotenv

from .app import WardenApp
from .config import load_settings
from .logging_setup import setup_logging


def main() -> None:
    load_dotenv()
    settings = load_settings()
    setup_logging(settings.log_level)

    try:
        asyncio.run(WardenApp(settings).run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    resolved = getattr(logging, level.strip().upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(resolved)

    # Library chatter only above WARNING.
    for noisy in ("discord", "aiohttp", "aiosqlite"):
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))

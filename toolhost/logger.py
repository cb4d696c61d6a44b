"""Logging configuration for toolhost."""

import logging
from pathlib import Path


def setup_logging(
    log_file: str = "log/toolhost.log",
    level: int = logging.DEBUG,
    console: bool = True,
) -> None:
    """Setup logging to file and optionally stderr."""
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, mode="a", encoding="utf-8"),
    ]

    # Interactive commands render their own output; keep stderr quiet for them
    if console:
        stream = logging.StreamHandler()
        stream.setLevel(logging.INFO)
        handlers.append(stream)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sse_starlette").setLevel(logging.WARNING)

    logging.getLogger("toolhost").setLevel(level)

    logging.info("=" * 60)
    logging.info(f"toolhost logging started. Writing to {log_path.absolute()}")
    logging.info("=" * 60)

"""Loguru sinks: console, plus server/api/ddos log files."""
import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = "{time:YYYY-MM-DDTHH:mm:ss.SSSZ} [{level}]: {message}"


def setup_logging(log_dir: Path, level: str = "INFO") -> None:
    """
    Replace loguru's default sink.

    - server.log: everything at ``level`` and above
    - api.log: INFO and above
    - ddos.log: WARNING and above (rate limiting, blocked origins)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    logger.add(log_dir / "server.log", level=level, format=LOG_FORMAT, rotation="50 MB", enqueue=True)
    logger.add(log_dir / "api.log", level="INFO", format=LOG_FORMAT, rotation="50 MB", enqueue=True)
    logger.add(log_dir / "ddos.log", level="WARNING", format=LOG_FORMAT, rotation="10 MB", enqueue=True)

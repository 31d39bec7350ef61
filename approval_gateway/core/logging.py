import sys
from loguru import logger
from .config import settings


def setup_logging(level: str | None = None, serialize: bool | None = None):
    """
    Configure the process-wide loguru sink.

    Structured context passed as keyword arguments (logger.info("...", operation_id=...))
    lands in record["extra"]; the JSON sink keeps it, the text sink appends it.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        serialize=settings.log_json if serialize is None else serialize,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} - {message} | {extra}",
        backtrace=False,
        diagnose=False,
    )
    return logger

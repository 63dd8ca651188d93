import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_QUIET = ("httpx", "httpcore", "aiosqlite")

_configured = False


def configure_logging(level: Optional[str] = None) -> None:
    """Root handlers are installed once; later calls only adjust the level."""
    global _configured
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    if _configured:
        return

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    # Operational log only; the audit trail lives in the repository
    if settings.log_file:
        handlers.append(RotatingFileHandler(settings.log_file, maxBytes=2_000_000, backupCount=5))

    fmt = logging.Formatter(_FORMAT)
    for h in handlers:
        h.setFormatter(fmt)
        root.addHandler(h)

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
    _configured = True

import logging
import sys

LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(module)s: %(message)s"
SECURITY_LOGGER_NAME = "smartattend.security"

_HANDLER_NAME = "smartattend-stdout"


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a single stdout handler to the package logger (safe to call repeatedly)."""
    root = logging.getLogger("smartattend")
    if not any(getattr(h, "name", None) == _HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    return root


def security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER_NAME)

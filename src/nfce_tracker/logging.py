import logging
import os
from typing import Optional, Union

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

ROOT_NAME = "nfce"
_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _coerce_level(value: Union[str, int, None]) -> int:
    if isinstance(value, str):
        return _LEVELS.get(value.upper().strip(), logging.INFO)
    if isinstance(value, int):
        return value
    return logging.INFO


def _root() -> logging.Logger:
    """The package logger; handlers are attached here once, children propagate to it."""
    root = logging.getLogger(ROOT_NAME)
    if getattr(root, "_nfce_configured", False):
        return root

    level = _coerce_level(os.environ.get("LOG_LEVEL", "INFO"))
    root.setLevel(level)
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    root.addHandler(sh)

    log_file = os.environ.get("LOG_FILE")
    if log_file:
        try:
            fh = logging.FileHandler(log_file, encoding="utf-8")
            fh.setFormatter(formatter)
            root.addHandler(fh)
        except OSError:
            root.warning(f"LOG_FILE {log_file!r} could not be opened; continuing without file logging")

    setattr(root, "_nfce_configured", True)
    return root


def get_logger(name: str) -> logging.Logger:
    """Return the `nfce.<name>` logger.

    Output format is `time [nfce.name] LEVEL: message`. LOG_LEVEL (default
    INFO) and LOG_FILE (optional, appended) are read when the first logger
    is requested.
    """
    _root()
    return logging.getLogger(f"{ROOT_NAME}.{name}")


def set_level(level: Optional[Union[str, int]]) -> None:
    """Change the level of every tracker logger at once (CLI --log-level)."""
    _root().setLevel(_coerce_level(level))

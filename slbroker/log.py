"""Debug logging. stdout is the statusline itself, so logs only ever go to a file."""

import logging

from slbroker import config

FORMAT = "%(asctime)s %(process)d %(name)s %(levelname)s %(message)s"

_root = logging.getLogger("slbroker")
_root.addHandler(logging.NullHandler())
_root.propagate = False


def setup(enabled=None):
    """Attach a file handler under BASE_DIR when debug logging is on."""
    enabled = config.DEBUG if enabled is None else enabled
    for h in list(_root.handlers):
        if isinstance(h, logging.FileHandler):
            _root.removeHandler(h)
            h.close()
    if not enabled:
        _root.setLevel(logging.WARNING)
        return False
    try:
        config.BASE_DIR.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.log_path(), encoding="utf-8")
    except OSError:
        return False
    handler.setFormatter(logging.Formatter(FORMAT))
    _root.addHandler(handler)
    _root.setLevel(logging.DEBUG)
    return True


def get(name):
    return logging.getLogger(f"slbroker.{name}")

"""
Logger lookup for engine, dispatcher and activity modules.

Every module asks for its logger through ``get_logger(__name__)``. Names
outside the ``durasaga`` namespace are nested under it, so one handler on
the ``durasaga`` logger (see ``durasaga.monitoring.setup_engine_logging``)
sees everything the engine emits.

An application that routes logs elsewhere can install its own object with
``set_logger``; it must offer debug/info/warning/error/exception/critical.
"""

import logging
from typing import Any

NAMESPACE = "durasaga"

_override: Any = None


def set_logger(logger: Any) -> None:
    """Route all engine logging to ``logger``; ``None`` restores stdlib loggers."""
    global _override
    _override = logger


def get_logger(name: str = NAMESPACE) -> Any:
    if _override is not None:
        return _override

    if name != NAMESPACE and not name.startswith(NAMESPACE + "."):
        name = f"{NAMESPACE}.{name}"
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger

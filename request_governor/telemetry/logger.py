from __future__ import annotations

import logging
import sys

from pythonjsonlogger import jsonlogger

from ..config import Settings

_HANDLER_NAME = "request-governor"


def configure_logging(settings: Settings) -> None:
    """Install a stdout handler on the root logger.

    JSON lines when ``log_format == "json"`` (the default), plain text
    otherwise. Calling it again replaces the handler instead of stacking.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for existing in list(root.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    if settings.log_format == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                "%(asctime)s %(name)s %(levelname)s %(message)s",
                rename_fields={"asctime": "timestamp", "levelname": "level"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)

    if settings.log_sql:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

"""JSON log records for the search engine, tagged with the running operation.

Only the ``flashcard_search`` logger tree is configured; the host
application's root logger is left alone.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from pathlib import Path
import sys
from typing import Any, TextIO

import orjson

from flashcard_search.observability.context import current_operation


PACKAGE_LOGGER = "flashcard_search"

_PLAIN_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_STANDARD_RECORD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Each object carries the ``operation`` scope (trace/span ids plus labels
    such as ``rebuild_mode`` or ``search_ranking``) and any ``extra=`` fields.
    Long values are clipped since card text can end up in ``extra``.
    """

    MAX_MESSAGE_LEN = 2000
    MAX_FIELD_LEN = 200

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "component": record.name.rsplit(".", 1)[-1],
            "message": self._clip(record.getMessage(), self.MAX_MESSAGE_LEN),
        }
        entry.update(current_operation())

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_KEYS or key.startswith("_"):
                continue
            entry[key] = self._clip(value, self.MAX_FIELD_LEN) if isinstance(value, str) else value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(entry, default=self._json_default).decode("utf-8")

    @staticmethod
    def _clip(text: str, limit: int) -> str:
        return text if len(text) <= limit else text[:limit] + "..."

    @staticmethod
    def _json_default(value: Any) -> Any:
        if isinstance(value, (set, frozenset)):
            try:
                return sorted(value)
            except TypeError:
                return list(value)
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8", errors="replace")
        return repr(value)


def configure_logging(
    level: str = "info",
    json_output: bool = True,
    *,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Attach one handler to the ``flashcard_search`` logger and return that logger.

    Calling it again replaces the handler installed by the previous call.
    Records do not propagate to the root logger once a handler is attached.
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in package_logger.handlers[:]:
        if getattr(handler, "_flashcard_search", False):
            package_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(_PLAIN_FORMAT))
    handler._flashcard_search = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
    package_logger.propagate = False
    return package_logger

"""Logging setup for CLA-dwight.

Production runs log one JSON object per line; ``LOG_FORMAT=text`` switches
to a readable format for local work. The id of the request being served
(see ``RequestContextMiddleware``) is attached to every record emitted
while handling it.

The organization token travels in every CLA assistant request body, so all
output passes through a redaction filter first.
"""

import contextvars
import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Pattern


# Set by the request context middleware, read by the JSON formatter.
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class _JsonFormatter(logging.Formatter):
    """Serialize a record, plus its ``extra`` fields, as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            entry["request_id"] = request_id

        entry.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in entry
        )

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_REDACTED = "***REDACTED***"

# Patterns with a capture group keep the group (the key or scheme) and
# redact the rest of the match.
_TOKEN_PATTERNS: List[Pattern[str]] = [
    re.compile(r"\bghp_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"),
    re.compile(r"\bgh[ousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-]{20,}"),
    re.compile(r"(?i)(basic\s+)[A-Za-z0-9+/=]{8,}"),
    re.compile(r"""(?i)((?:token|password|secret|authorization)['"]?\s*[=:]\s*['"]?)[^\s,'"]{8,}"""),
]


class _SecretFilter(logging.Filter):
    """Scrub credentials from message, positional args and traceback text.

    Args:
        secrets: Literal values to hide wherever they appear, e.g. the
            configured organization token whatever its format.
    """

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self._patterns = list(_TOKEN_PATTERNS)
        self._patterns.extend(re.compile(re.escape(s)) for s in secrets if s)

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self.redact(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(self.redact(a) if isinstance(a, str) else a for a in record.args)
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = self.redact(record.exc_text)
        return True

    def redact(self, text: str) -> str:
        for pattern in self._patterns:
            text = pattern.sub(lambda m: (m.group(1) if m.lastindex else "") + _REDACTED, text)
        return text


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    secrets: Iterable[str] = (),
) -> None:
    """Install the stdout handler on the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL (default INFO).
        log_format: ``"json"`` (default) or ``"text"``.
        secrets: Extra literal values the redaction filter must hide.
    """
    level = (log_level or "INFO").upper()
    fmt = (log_format or "json").lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_SecretFilter(secrets))
    if fmt == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request line at INFO; uvicorn.access duplicates ours.
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured", extra={"level": level, "format": fmt})

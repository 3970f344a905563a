"""
Storefront Logging
==================

One stdout handler for the whole process. Production emits one JSON object
per line, tagged with whichever order fields the call site passed in
`extra`; development gets plain text.

Credentials handed to configure_logging() are masked in the rendered
message, in tracebacks and in every string-valued order field before a line
is written.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Iterable

ORDER_FIELDS = ("session_id", "order_no", "sku", "carrier_code", "status")
MASK = "[redacted]"

NOISY_LOGGERS = ("uvicorn.access", "httpx", "stripe")


class SecretMasker:
    """Replaces every occurrence of a known secret with MASK."""

    def __init__(self, secrets: Iterable[str] = ()):
        # Longest first so a secret containing another is masked whole
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def __call__(self, text):
        if not isinstance(text, str):
            return text
        for secret in self.secrets:
            text = text.replace(secret, MASK)
        return text


class JSONFormatter(logging.Formatter):
    """Order-aware JSON lines."""

    def __init__(self, masker: SecretMasker = None):
        super().__init__()
        self.mask = masker or SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self.mask(record.getMessage()),
        }
        entry.update({
            name: self.mask(getattr(record, name))
            for name in ORDER_FIELDS
            if getattr(record, name, None) is not None
        })
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.mask(self.formatException(record.exc_info))

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):

    def __init__(self, masker: SecretMasker = None):
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        self.mask = masker or SecretMasker()

    def format(self, record: logging.LogRecord) -> str:
        return self.mask(super().format(record))


def configure_logging(level: str = "INFO", fmt: str = "json", secrets: Iterable[str] = ()):
    """
    Install the process-wide handler.

    Args:
        level: Log level name; unknown names fall back to INFO
        fmt: "json" for JSON lines, anything else for plain text
        secrets: Credential values to mask in every line
    """
    masker = SecretMasker(secrets)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(masker) if fmt == "json" else TextFormatter(masker))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

from __future__ import annotations

from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Mapping
from uuid import uuid4


REQUEST_ID_CONTEXT: ContextVar[str] = ContextVar("request_id", default="-")
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
REDACTED = "[REDACTED]"
_HANDLER_FLAG = "_atsguard_handler"

# ATS forms carry supervisor and worker identity next to the safety content.
# Keys are compared after lowercasing and folding "-" and spaces to "_".
PERSONAL_KEYS = frozenset(
    {
        "email",
        "correo",
        "phone",
        "telefono",
        "celular",
        "cedula",
        "document_number",
        "numero_documento",
        "national_id",
    }
)
CREDENTIAL_KEYS = frozenset({"authorization", "cookie", "set_cookie", "password", "client_secret"})
SENSITIVE_KEY_FRAGMENTS = (
    "secret",
    "token",
    "password",
    "api_key",
    "apikey",
    "access_key",
    "private_key",
    "cedula",
    "signature",
    "firma",
)

# Applied in order: credentials first so the generic phone/id rules never see them.
TEXT_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "[REDACTED_AWS_ACCESS_KEY]"),
    (
        re.compile(r"(?i)\b(aws_secret_access_key|secret_access_key)(\s*[:=]\s*)[A-Za-z0-9/+=]{16,}"),
        r"\1\2[REDACTED]",
    ),
    (
        re.compile(r"(?i)\b(c\.?\s?c\.?|c[eé]dula|nit)(\s*(?:no\.?|n[°º])?\s*[:#]?\s*)[\d.\-]{6,15}"),
        r"\1\2[REDACTED_ID]",
    ),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    # Colombian mobiles (3xx xxx xxxx, optional +57) and NANP numbers.
    (
        re.compile(
            r"(?:\+57[-.\s]?)?\b3\d{2}[-.\s]?\d{3}[-.\s]?\d{4}\b"
            r"|\b(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"
        ),
        "[REDACTED_PHONE]",
    ),
)


def normalize_request_id(candidate: str | None) -> str:
    trimmed = (candidate or "").strip()
    if REQUEST_ID_PATTERN.fullmatch(trimmed):
        return trimmed
    return str(uuid4())


def set_request_id(request_id: str) -> Token[str]:
    return REQUEST_ID_CONTEXT.set(request_id)


def reset_request_id(token: Token[str]) -> None:
    REQUEST_ID_CONTEXT.reset(token)


def get_request_id() -> str:
    return REQUEST_ID_CONTEXT.get()


def is_sensitive_key(key: str) -> bool:
    folded = re.sub(r"[-\s]+", "_", key.strip().lower())
    if folded in PERSONAL_KEYS or folded in CREDENTIAL_KEYS:
        return True
    return any(fragment in folded for fragment in SENSITIVE_KEY_FRAGMENTS)


def redact_text(value: str, *, max_length: int) -> str:
    for pattern, replacement in TEXT_REDACTIONS:
        value = pattern.sub(replacement, value)
    if len(value) > max_length:
        return f"{value[:max_length]}...[truncated]"
    return value


def sanitize_for_logging(value: Any, *, max_string_length: int = 240, max_items: int = 20) -> Any:
    """Make a value safe to log.

    Sensitive keys are masked, free text is scrubbed of personal data and
    credentials, long strings are truncated, and collections are cut to
    ``max_items`` entries. Drafts and checklists can carry dozens of hazards and
    actions; the log only needs enough of them to recognize the payload.
    """
    if isinstance(value, str):
        return redact_text(value, max_length=max_string_length)

    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"

    if isinstance(value, Mapping):
        return {
            str(key): REDACTED
            if is_sensitive_key(str(key))
            else sanitize_for_logging(item, max_string_length=max_string_length, max_items=max_items)
            for key, item in value.items()
        }

    if isinstance(value, (list, tuple, set)):
        items = list(value)
        kept = [
            sanitize_for_logging(item, max_string_length=max_string_length, max_items=max_items)
            for item in items[:max_items]
        ]
        if len(items) > max_items:
            kept.append(f"[+{len(items) - max_items} more]")
        return kept

    return value


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; every ``extra=`` field is sanitized."""

    _RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        extras = {key: value for key, value in vars(record).items() if key not in self._RECORD_ATTRS}
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": extras.pop("request_id", None) or get_request_id(),
        }
        payload.update(sanitize_for_logging(extras))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level_name: str) -> None:
    """Install the JSON handler on the root logger once; later calls only change the level."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    if any(getattr(handler, _HANDLER_FLAG, False) for handler in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    setattr(handler, _HANDLER_FLAG, True)
    root.addHandler(handler)

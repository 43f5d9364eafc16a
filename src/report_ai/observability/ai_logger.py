from __future__ import annotations

"""Structured request/response logging for provider calls.

Every provider call is logged as a small family of records sharing one request
id: ``llm_request`` (masked request data), ``llm_response`` (status, usage and
duration), ``llm_error`` and free-form ``llm_debug`` notes. Secrets are masked
before anything reaches a handler.

Env vars:
- REPORT_AI_LOG_MASK_SENSITIVE (default "1"): disable masking with "0"
"""

import logging
import os
import random
import re
import string
import time
from typing import Any, Dict, Optional

LOG = logging.getLogger("report_ai.llm")

_SENSITIVE_KEYS = (
    "apikey",
    "api_key",
    "api-key",
    "authorization",
    "password",
    "secret",
    "token",
)

_SECRET_PATTERNS = (
    (re.compile(r"sk-or-[a-zA-Z0-9\-]{20,}"), "sk-or-***MASKED***"),
    (re.compile(r"sk-ant-[a-zA-Z0-9\-_]{20,}"), "sk-ant-***MASKED***"),
    (re.compile(r"sk-[a-zA-Z0-9\-_]{20,}"), "sk-***MASKED***"),
    (re.compile(r"gsk_[a-zA-Z0-9]{20,}"), "gsk_***MASKED***"),
    (re.compile(r"AIzaSy[a-zA-Z0-9_\-]{33}"), "AIzaSy***MASKED***"),
    (re.compile(r"Bearer\s+[a-zA-Z0-9\-._~+/]+=*"), "Bearer ***MASKED***"),
)

# Usage counters are not secrets even though their keys contain "token".
_NON_SECRET_KEYS = ("prompt_tokens", "completion_tokens", "total_tokens", "max_tokens", "tokens")


def _masking_enabled() -> bool:
    return (os.getenv("REPORT_AI_LOG_MASK_SENSITIVE") or "1").strip().lower() not in ("0", "false", "no")


def generate_request_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def mask_sensitive(data: Any) -> Any:
    """Return a copy of ``data`` with API keys and bearer tokens masked."""

    if isinstance(data, str):
        masked = data
        for pattern, replacement in _SECRET_PATTERNS:
            masked = pattern.sub(replacement, masked)
        return masked
    if isinstance(data, (list, tuple)):
        return [mask_sensitive(item) for item in data]
    if isinstance(data, dict):
        out: Dict[str, Any] = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered not in _NON_SECRET_KEYS and any(sk in lowered for sk in _SENSITIVE_KEYS):
                out[key] = "***MASKED***"
            else:
                out[key] = mask_sensitive(value)
        return out
    return data


def _payload(data: Any) -> Any:
    return mask_sensitive(data) if _masking_enabled() else data


def log_request(
    provider: str,
    operation: str,
    request_id: str,
    request: Dict[str, Any],
    caller_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    LOG.info(
        "llm_request",
        extra={
            "provider": provider,
            "operation": operation,
            "request_id": request_id,
            "caller_id": caller_id,
            "request": _payload(request),
            "metadata": _payload(metadata or {}),
        },
    )


def log_response(
    provider: str,
    operation: str,
    request_id: str,
    response: Dict[str, Any],
    caller_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    LOG.info(
        "llm_response",
        extra={
            "provider": provider,
            "operation": operation,
            "request_id": request_id,
            "caller_id": caller_id,
            "response": _payload(response),
            "metadata": _payload(metadata or {}),
        },
    )


def log_error(
    provider: str,
    operation: str,
    request_id: str,
    error: BaseException,
    caller_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    LOG.error(
        "llm_error",
        extra={
            "provider": provider,
            "operation": operation,
            "request_id": request_id,
            "caller_id": caller_id,
            "err": _payload(str(error)),
            "err_type": type(error).__name__,
            "metadata": _payload(metadata or {}),
        },
    )


def log_debug(
    provider: str,
    operation: str,
    request_id: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    caller_id: Optional[str] = None,
) -> None:
    LOG.debug(
        message,
        extra={
            "provider": provider,
            "operation": operation,
            "request_id": request_id,
            "caller_id": caller_id,
            "data": _payload(data or {}),
        },
    )

"""Error classification for backend failures.

Turns an HTTP status, an error body and/or a raised exception into a
``ClassifiedError``: a retryability verdict plus a message the UI can show
verbatim. Pure functions only, no I/O.
"""

from __future__ import annotations

import json
import re

from chat_relay.config import ModelProvider, ProviderGroup
from chat_relay.types import ApiKind, ClassifiedError, ErrorCategory

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Coarse substring heuristic for exceptions that carry no status code.
# Known to miss some transient failures whose text mentions none of these.
_RETRYABLE_MARKERS = ("timeout", "connection", "429", "500", "502", "503", "504")

_ERROR_FIELDS = ("error", "message", "detail", "msg", "error_description")

_STATUS_DESCRIPTIONS = {
    400: "Bad request: check the request parameters",
    401: "Unauthorized: check that the API key is correct",
    403: "Forbidden: the API key has no access to this resource",
    404: "Not found: check the API URL and model name",
    429: "Too many requests: rate limit or quota exceeded, try again later",
    500: "Internal server error",
    502: "Bad gateway",
    503: "Service unavailable: the server is overloaded or down",
    504: "Gateway timeout",
}
_UNKNOWN_STATUS = "Unknown error"

_HTML_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")

_UNKNOWN_HOST_MARKERS = (
    "unknownhost", "name or service not known", "nodename nor servname",
    "getaddrinfo failed", "temporary failure in name resolution",
)


def status_description(status_code: int | None) -> str:
    if status_code is None:
        return _UNKNOWN_STATUS
    return _STATUS_DESCRIPTIONS.get(status_code, _UNKNOWN_STATUS)


def exception_text(exc: BaseException) -> str:
    """``"<Type>: <message>"``, the text the retry heuristic looks at."""
    message = str(exc)
    name = type(exc).__name__
    return f"{name}: {message}" if message else name


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def is_retryable_exception(exc: BaseException) -> bool:
    text = exception_text(exc).lower()
    return any(marker in text for marker in _RETRYABLE_MARKERS)


def api_kind_for(provider: ModelProvider | None) -> ApiKind:
    if provider is None:
        return ApiKind.UNKNOWN
    return {
        ProviderGroup.LOCAL: ApiKind.LOCAL,
        ProviderGroup.OFFICIAL: ApiKind.OFFICIAL,
        ProviderGroup.THIRD_PARTY: ApiKind.THIRD_PARTY,
    }[provider.group]


# ---------------------------------------------------------------------------
# Body inspection
# ---------------------------------------------------------------------------

def clean_error_body(body: str) -> str:
    """Strip HTML tags and collapse whitespace (proxy error pages etc.)."""
    return _WHITESPACE_RE.sub(" ", _HTML_TAG_RE.sub("", body)).strip()


def extract_error_detail(body: str | None) -> str:
    """Pull the most specific human-readable message out of an error body."""
    if not body:
        return ""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return clean_error_body(body)

    if isinstance(data, dict):
        for name in _ERROR_FIELDS:
            node = data.get(name)
            if node is None:
                continue
            if isinstance(node, dict):
                nested = node.get("message") or node.get("msg")
                if isinstance(nested, str):
                    return nested
            elif isinstance(node, str):
                return node
    return json.dumps(data, indent=2, ensure_ascii=False)


def _local_hint(status_code: int, model_name: str | None) -> str:
    if status_code == 404:
        model = f" '{model_name}'" if model_name else ""
        return (f"Make sure the model{model} is loaded on the local server "
                f"and the endpoint path is correct.")
    if status_code in (401, 403):
        return "The local server rejected the credentials; check its API key setting."
    if status_code >= 500:
        return "The local inference server failed; check its logs."
    return ""


def _connectivity_detail(text: str) -> str:
    lower = text.lower()
    if "connection refused" in lower or "connectionrefused" in lower:
        return "Connection refused: is the local server running and listening on this port?"
    if "timeout" in lower or "timed out" in lower:
        return "The request timed out: the model may still be loading, or the server is overloaded."
    if any(marker in lower for marker in _UNKNOWN_HOST_MARKERS):
        return "Unknown host: check the host name in the API URL."
    return "Could not reach the server: check the API URL and network."


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------

def classify(
    status_code: int | None = None,
    raw_body: str | None = None,
    exception: BaseException | None = None,
    provider: ModelProvider | None = None,
    model_name: str | None = None,
) -> ClassifiedError:
    """Classify a failure.

    Parameters
    ----------
    status_code:
        HTTP status, when the server answered.
    raw_body:
        Error body (or the offending stream payload).
    exception:
        Exception raised while connecting or reading, if any.
    provider:
        Provider kind of the model config; selects the wording.
    model_name:
        Used in hints for local servers.
    """
    api_kind = api_kind_for(provider)

    if status_code is not None:
        retryable = is_retryable_status(status_code)
        category = ErrorCategory.HTTP_STATUS
    elif exception is not None:
        retryable = is_retryable_exception(exception)
        category = ErrorCategory.CONNECTIVITY
    elif raw_body is not None:
        # error reported in-band inside a 2xx body
        retryable = False
        category = ErrorCategory.HTTP_STATUS
    else:
        retryable = False
        category = ErrorCategory.MALFORMED_RESPONSE

    if api_kind is ApiKind.LOCAL and status_code is None and exception is not None:
        message = _format_connectivity(provider, exception)
    else:
        body = raw_body
        if body is None and exception is not None:
            body = exception_text(exception)
        message = _format_http(api_kind, provider, status_code, body, model_name)

    return ClassifiedError(
        api_kind=api_kind,
        category=category,
        is_retryable=retryable,
        user_message=message,
        status_code=status_code,
        raw_body=raw_body,
    )


def exhausted(last: ClassifiedError, attempts: int) -> ClassifiedError:
    """Re-tag *last* as the terminal error after *attempts* tries."""
    return ClassifiedError(
        api_kind=last.api_kind,
        category=ErrorCategory.RETRY_EXHAUSTED,
        is_retryable=False,
        user_message=f"{last.user_message}\n\n(Gave up after {attempts} attempts.)",
        status_code=last.status_code,
        raw_body=last.raw_body,
    )


def _header(api_kind: ApiKind, provider: ModelProvider | None) -> str:
    if api_kind is ApiKind.OFFICIAL:
        return "The official API request failed."
    if api_kind in (ApiKind.THIRD_PARTY, ApiKind.LOCAL) and provider is not None:
        return f"{provider.display_name} API request failed."
    return "API request failed."


def _status_line(status_code: int | None) -> str:
    code = status_code if status_code is not None else "-"
    return f"Status: {code} ({status_description(status_code)})"


def _format_connectivity(provider: ModelProvider | None, exc: BaseException) -> str:
    name = provider.display_name if provider is not None else "local"
    text = exception_text(exc)
    return (
        f"Could not connect to the {name} server.\n\n"
        f"{_connectivity_detail(text)}\n\n"
        f"{_status_line(None)}\n\n"
        f"Details: {text}"
    )


def _format_http(
    api_kind: ApiKind,
    provider: ModelProvider | None,
    status_code: int | None,
    body: str | None,
    model_name: str | None,
) -> str:
    parts: list[str] = [_header(api_kind, provider), _status_line(status_code)]
    detail = extract_error_detail(body)
    if detail:
        parts.append(f"Error: {detail}")
    elif body:
        parts.append(f"Raw response:\n{body}")
    if api_kind is ApiKind.LOCAL and status_code is not None:
        hint = _local_hint(status_code, model_name)
        if hint:
            parts.append(hint)
    return "\n\n".join(parts)


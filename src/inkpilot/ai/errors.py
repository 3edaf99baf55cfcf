"""Error taxonomy for chat-completion and token-exchange failures.

Every failure surfaced by the AI client derives from :class:`AIServiceError`
so callers can route on the concrete subclass:

* :class:`TransientServerError` - 5xx responses that survived the retry policy.
* :class:`PayloadRejectedError` - 400 responses (after the image-strip retry).
* :class:`AuthenticationExpiredError` - 401/403 from the chat endpoint.
* :class:`NotAuthenticatedError` - the long-lived credential is missing or was
  rejected by the token exchange; the host must re-run its login flow.
* :class:`QuotaExceededError` - billing or premium-request budget exhausted.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AIServiceError",
    "TransientServerError",
    "PayloadRejectedError",
    "AuthenticationExpiredError",
    "NotAuthenticatedError",
    "QuotaExceededError",
    "NOT_AUTHENTICATED",
    "is_quota_error",
    "translate_status_error",
]

NOT_AUTHENTICATED = "NOT_AUTHENTICATED"

# Lower-cased fragments seen in quota/billing rejections. Upstream wording
# changes often, so this stays a best-effort classification.
_QUOTA_MARKERS: tuple[str, ...] = (
    "quota",
    "billing",
    "budget",
    "premium request",
    "insufficient_quota",
    "usage limit",
    "monthly limit",
    "payment required",
)
_QUOTA_STATUSES = frozenset({402, 429})
_DETAIL_LIMIT = 2_000


class AIServiceError(RuntimeError):
    """Base class for failures talking to the hosted model endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        return f"{type(self).__name__}({str(self)!r}, status_code={self.status_code!r})"


class TransientServerError(AIServiceError):
    """Raised when server-side failures persist after every retry."""


class PayloadRejectedError(AIServiceError):
    """Raised when the endpoint rejects the request body (HTTP 400)."""


class AuthenticationExpiredError(AIServiceError):
    """Raised when the chat endpoint refuses the session token."""


class NotAuthenticatedError(AIServiceError):
    """Raised when no usable long-lived credential is available."""

    def __init__(self, detail: str = "", *, status_code: int | None = None) -> None:
        super().__init__(NOT_AUTHENTICATED, status_code=status_code, detail=detail)


class QuotaExceededError(AIServiceError):
    """Raised when the account's quota or billing budget is exhausted."""


def is_quota_error(status_code: int | None, body: str | None = None) -> bool:
    """Return ``True`` when a failure looks like quota/billing exhaustion."""

    if status_code in _QUOTA_STATUSES:
        return True
    text = (body or "").lower()
    if not text:
        return False
    return any(marker in text for marker in _QUOTA_MARKERS)


def translate_status_error(status_code: int | None, body: Any, *, message: str | None = None) -> AIServiceError:
    """Map an HTTP status and response body onto the error taxonomy."""

    detail = _stringify_body(body)
    summary = message or f"Chat completion request failed with status {status_code}"
    if is_quota_error(status_code, detail):
        return QuotaExceededError(
            f"Quota exhausted (status {status_code})", status_code=status_code, detail=detail
        )
    if status_code == 400:
        return PayloadRejectedError(summary, status_code=status_code, detail=detail)
    if status_code in (401, 403):
        return AuthenticationExpiredError(summary, status_code=status_code, detail=detail)
    if status_code is not None and status_code >= 500:
        return TransientServerError(summary, status_code=status_code, detail=detail)
    return AIServiceError(summary, status_code=status_code, detail=detail)


def _stringify_body(body: Any) -> str:
    if body is None:
        return ""
    if isinstance(body, bytes):
        text = body.decode("utf-8", errors="replace")
    else:
        text = str(body)
    if len(text) > _DETAIL_LIMIT:
        return text[:_DETAIL_LIMIT] + "…"
    return text

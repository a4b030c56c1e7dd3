from __future__ import annotations

import hmac
import logging
import secrets
import time
from typing import Any, Iterable, Mapping

from webengine.services.auth.sessions import SessionState


logger = logging.getLogger(__name__)

CSRF_SESSION_KEY = "csrf_token"
CSRF_TIME_KEY = "csrf_token_time"
CSRF_FORM_FIELD = "csrf_token"
CSRF_HEADER_NAMES = ("X-CSRF-Token", "X-CSRFToken", "X-XSRF-Token")
CSRF_COOKIE_NAMES = ("csrf_token", "csrf_token_auth")


def generate_csrf_token() -> str:
    # 32 random bytes rendered as 64 hex characters.
    return secrets.token_hex(32)


def _now() -> float:
    return time.time()


def issue_csrf_token(state: SessionState, *, lifetime_s: int, now: float | None = None) -> str:
    # Reuse the current token while it is fresh so open forms keep working.
    current = state.get(CSRF_SESSION_KEY)
    issued_at = state.get(CSRF_TIME_KEY, 0) or 0
    moment = now if now is not None else _now()
    if isinstance(current, str) and current and moment - float(issued_at) < lifetime_s:
        return current
    return rotate_csrf_token(state, now=moment)


def rotate_csrf_token(state: SessionState, *, now: float | None = None) -> str:
    token = generate_csrf_token()
    state.set(CSRF_SESSION_KEY, token)
    state.set(CSRF_TIME_KEY, int(now if now is not None else _now()))
    return token


def _lookup(data: Mapping[str, Any], key: str) -> Any:
    # Dotted keys address nested session dicts, e.g. "csrf.token".
    if key in data:
        return data[key]
    current: Any = data
    for part in key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def extract_csrf_token(
    *,
    form: Mapping[str, Any] | None = None,
    json_body: Any = None,
    headers: Mapping[str, str] | None = None,
    cookies: Mapping[str, str] | None = None,
) -> str | None:
    """Return the first non-empty token from body, then headers, then cookies."""
    candidates: list[Any] = []
    if form is not None:
        candidates.append(form.get(CSRF_FORM_FIELD))
    if isinstance(json_body, Mapping):
        candidates.append(json_body.get(CSRF_FORM_FIELD))
    if headers is not None:
        lowered = {str(key).lower(): value for key, value in headers.items()}
        candidates.extend(lowered.get(name.lower()) for name in CSRF_HEADER_NAMES)
    if cookies is not None:
        candidates.extend(cookies.get(name) for name in CSRF_COOKIE_NAMES)
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def validate_csrf(
    state: SessionState,
    token: str | None,
    *,
    lifetime_s: int,
    legacy_keys: Iterable[str] = (),
    now: float | None = None,
) -> bool:
    """Check ``token`` against the session using constant-time comparison.

    The canonical token must be unexpired. Tokens stored under ``legacy_keys``
    by older login forms are accepted without an expiry check.
    """
    if not token:
        logger.warning("csrf_validation_failed reason=missing_token")
        return False
    moment = now if now is not None else _now()
    canonical = state.get(CSRF_SESSION_KEY)
    issued_at = float(state.get(CSRF_TIME_KEY, 0) or 0)
    if isinstance(canonical, str) and canonical and moment - issued_at < lifetime_s:
        if hmac.compare_digest(canonical.encode("utf-8"), token.encode("utf-8")):
            return True

    for key in legacy_keys:
        stored = _lookup(state.data, key)
        if isinstance(stored, str) and stored:
            if hmac.compare_digest(stored.encode("utf-8"), token.encode("utf-8")):
                logger.info("csrf_validation_passed source=legacy_key key=%s", key)
                return True
    logger.warning("csrf_validation_failed reason=mismatch")
    return False


def parse_legacy_keys(raw: str) -> tuple[str, ...]:
    return tuple(key.strip() for key in raw.split(",") if key.strip())

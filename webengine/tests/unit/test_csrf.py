from __future__ import annotations

import pytest

from webengine.services.auth.csrf import (
    CSRF_SESSION_KEY,
    CSRF_TIME_KEY,
    extract_csrf_token,
    issue_csrf_token,
    parse_legacy_keys,
    rotate_csrf_token,
    validate_csrf,
)
from webengine.services.auth.sessions import SessionState


LEGACY_KEYS = parse_legacy_keys("csrf_token_login,csrf_token_auth,csrf.token")


def test_issue_reuses_fresh_token_and_rotates_expired() -> None:
    state = SessionState()
    token = issue_csrf_token(state, lifetime_s=1800, now=1000.0)
    assert len(token) == 64
    assert issue_csrf_token(state, lifetime_s=1800, now=2000.0) == token
    # Past the lifetime a new token replaces the old one.
    renewed = issue_csrf_token(state, lifetime_s=1800, now=4000.0)
    assert renewed != token
    assert state.get(CSRF_TIME_KEY) == 4000


@pytest.mark.parametrize("token", [None, "", "   "])
def test_missing_tokens_are_rejected(token) -> None:
    state = SessionState(data={CSRF_SESSION_KEY: "abc", CSRF_TIME_KEY: 1000})
    assert not validate_csrf(state, token, lifetime_s=1800, legacy_keys=LEGACY_KEYS, now=1001.0)


def test_canonical_token_must_be_unexpired() -> None:
    state = SessionState()
    token = issue_csrf_token(state, lifetime_s=1800, now=1000.0)
    assert validate_csrf(state, token, lifetime_s=1800, now=1500.0)
    assert not validate_csrf(state, token, lifetime_s=1800, now=5000.0)
    assert not validate_csrf(state, token.upper() + "x", lifetime_s=1800, now=1500.0)


@pytest.mark.parametrize(
    "data",
    [
        {"csrf_token_login": "legacy-value"},
        {"csrf_token_auth": "legacy-value"},
        {"csrf": {"token": "legacy-value"}},
    ],
)
def test_legacy_session_keys_are_accepted(data) -> None:
    # Tokens stored by older login forms still validate, including nested keys.
    state = SessionState(data=dict(data))
    assert validate_csrf(state, "legacy-value", lifetime_s=1800, legacy_keys=LEGACY_KEYS, now=1.0)
    assert not validate_csrf(state, "legacy-value", lifetime_s=1800, legacy_keys=(), now=1.0)
    assert not validate_csrf(state, "other-value", lifetime_s=1800, legacy_keys=LEGACY_KEYS, now=1.0)


def test_rotation_invalidates_previous_token() -> None:
    state = SessionState()
    old = issue_csrf_token(state, lifetime_s=1800, now=1000.0)
    new = rotate_csrf_token(state, now=1001.0)
    assert new != old
    assert not validate_csrf(state, old, lifetime_s=1800, now=1002.0)
    assert validate_csrf(state, new, lifetime_s=1800, now=1002.0)


def test_extract_prefers_body_then_headers_then_cookies() -> None:
    headers = {"x-xsrf-token": "from-header"}
    cookies = {"csrf_token_auth": "from-cookie"}
    assert extract_csrf_token(form={"csrf_token": "from-form"}, headers=headers, cookies=cookies) == "from-form"
    assert extract_csrf_token(json_body={"csrf_token": "from-json"}, headers=headers) == "from-json"
    assert extract_csrf_token(json_body=["not", "a", "mapping"], headers=headers, cookies=cookies) == "from-header"
    assert extract_csrf_token(headers={}, cookies=cookies) == "from-cookie"
    assert extract_csrf_token(form={"csrf_token": ""}, headers={}, cookies={}) is None

from __future__ import annotations

import pytest

from webengine.core.errors import PermissionDenied
from webengine.services.audit import sanitize_metadata
from webengine.services.authz import Actor, authorize, normalize_role, require


ADMIN = Actor(user_id=1, role="admin")
EMPLOYEE = Actor(user_id=2, role="employee")
CLIENT = Actor(user_id=3, role="client")
USER = Actor(user_id=4, role="user")


@pytest.mark.parametrize(
    ("actor", "action", "allowed"),
    [
        (ADMIN, "backup.manage", True),
        (EMPLOYEE, "backup.manage", False),
        (EMPLOYEE, "project.moderate", True),
        (CLIENT, "project.moderate", False),
        (CLIENT, "ticket.create", True),
        (USER, "ticket.create", False),
        (USER, "comment.create", True),
        (CLIENT, "ticket.internal_note", False),
        (ADMIN, "made.up", False),
        (None, "comment.create", False),
    ],
)
def test_role_rules(actor, action: str, allowed: bool) -> None:
    assert authorize(actor, action).allowed is allowed


def test_owner_rules_compare_user_ids() -> None:
    # Ownership grants only owner-scoped actions and only to the owner.
    assert authorize(CLIENT, "project.edit", owner_id=CLIENT.user_id).reason == "owner"
    assert not authorize(CLIENT, "project.edit", owner_id=99).allowed
    assert not authorize(CLIENT, "project.edit").allowed
    assert authorize(EMPLOYEE, "ticket.read", owner_id=99).reason == "role"
    assert not authorize(USER, "project.moderate", owner_id=USER.user_id).allowed


def test_require_raises_generic_denial() -> None:
    assert require(ADMIN, "settings.manage") is ADMIN
    with pytest.raises(PermissionDenied, match="Access denied"):
        require(CLIENT, "settings.manage")


def test_normalize_role() -> None:
    assert normalize_role(" Admin ") == "admin"
    with pytest.raises(ValueError):
        normalize_role("superuser")


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "username": "alice",
        "csrf_token": "abc",
        "nested": {"Password": "pw", "items": [{"remember_token": "t", "ok": 1}]},
    }
    assert sanitize_metadata(payload) == {
        "username": "alice",
        "csrf_token": "[REDACTED]",
        "nested": {"Password": "[REDACTED]", "items": [{"remember_token": "[REDACTED]", "ok": 1}]},
    }

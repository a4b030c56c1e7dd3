from __future__ import annotations

from dataclasses import dataclass

from webengine.core.errors import PermissionDenied


ROLES = ("admin", "employee", "client", "user")
STAFF_ROLES = frozenset({"admin", "employee"})


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for policy checks.
    normalized = role.strip().lower()
    if normalized not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


@dataclass(frozen=True)
class Actor:
    # Authenticated caller passed explicitly into every service operation.
    user_id: int
    role: str
    username: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Rule:
    # Roles granted the action outright, and whether the resource owner is also granted it.
    roles: frozenset[str]
    owner: bool = False


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    reason: str


_STAFF = STAFF_ROLES
_ADMIN = frozenset({"admin"})
_NONE: frozenset[str] = frozenset()

RULES: dict[str, Rule] = {
    "backup.manage": Rule(roles=_ADMIN),
    "settings.manage": Rule(roles=_ADMIN),
    "project.create": Rule(roles=frozenset({"client"})),
    "project.edit": Rule(roles=_NONE, owner=True),
    "project.submit": Rule(roles=_NONE, owner=True),
    "project.toggle_visibility": Rule(roles=_NONE, owner=True),
    "project.delete": Rule(roles=_NONE, owner=True),
    "project.moderate": Rule(roles=_STAFF),
    "comment.create": Rule(roles=frozenset(ROLES)),
    "comment.edit": Rule(roles=_NONE, owner=True),
    "comment.delete": Rule(roles=_STAFF, owner=True),
    "comment.moderate": Rule(roles=_STAFF),
    "ticket.create": Rule(roles=frozenset({"client", "employee", "admin"})),
    "ticket.read": Rule(roles=_STAFF, owner=True),
    "ticket.reply": Rule(roles=_STAFF, owner=True),
    "ticket.internal_note": Rule(roles=_STAFF),
    "ticket.update_status": Rule(roles=_STAFF),
    "ticket.list_all": Rule(roles=_STAFF),
    "moderation.view": Rule(roles=_STAFF),
}


def authorize(actor: Actor | None, action: str, *, owner_id: int | None = None) -> AuthzDecision:
    """Decide whether ``actor`` may perform ``action`` on a resource owned by ``owner_id``.

    Unknown actions and anonymous actors are denied.
    """
    rule = RULES.get(action)
    if rule is None:
        return AuthzDecision(allowed=False, reason="unknown_action")
    if actor is None:
        return AuthzDecision(allowed=False, reason="anonymous")
    if actor.role in rule.roles:
        return AuthzDecision(allowed=True, reason="role")
    if rule.owner and owner_id is not None and owner_id == actor.user_id:
        return AuthzDecision(allowed=True, reason="owner")
    return AuthzDecision(allowed=False, reason="denied")


def require(actor: Actor | None, action: str, *, owner_id: int | None = None) -> Actor:
    # Raise the generic denial so callers never leak resource existence.
    decision = authorize(actor, action, owner_id=owner_id)
    if not decision.allowed:
        raise PermissionDenied()
    assert actor is not None
    return actor

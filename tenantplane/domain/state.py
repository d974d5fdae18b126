from __future__ import annotations

from tenantplane.core.errors import InvalidTransitionError


PENDING = "pending"
PROVISIONING = "provisioning"
ACTIVE = "active"
FAILED = "failed"
DEACTIVATED = "deactivated"

TENANT_STATUSES = frozenset({PENDING, PROVISIONING, ACTIVE, FAILED, DEACTIVATED})

PLANS = frozenset({"free", "pro", "enterprise"})

# Deactivation is the only way out of active; failed and deactivated are terminal.
_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PROVISIONING}),
    PROVISIONING: frozenset({ACTIVE, FAILED}),
    ACTIVE: frozenset({DEACTIVATED}),
    FAILED: frozenset(),
    DEACTIVATED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    if target not in TENANT_STATUSES:
        raise InvalidTransitionError(f"Unknown tenant status: {target}")
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Tenant cannot move from {current} to {target}")

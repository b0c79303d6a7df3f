"""
Approval routing for timesheet entries.

All "who may move an entry where" rules live in TRANSITIONS, keyed by
(current status, actor role, action). Services never branch on roles
themselves; they ask next_status()/route() and persist the answer.
"""
import uuid
from enum import Enum

from worklog.core.errors import InvalidTransition
from worklog.core.rbac.context import ActorContext

DRAFT = "draft"
SUBMITTED = "submitted"
PENDING_PM = "pending_pm"
PENDING_ADMIN = "pending_admin"
APPROVED = "approved"
REJECTED = "rejected"


class ActorRole(str, Enum):
    SELF = "self"
    PROJECT_MANAGER = "project_manager"
    ADMIN = "admin"


class Action(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"


TRANSITIONS: dict[tuple[str, ActorRole, Action], frozenset[str]] = {
    (DRAFT, ActorRole.SELF, Action.SUBMIT): frozenset({PENDING_PM, PENDING_ADMIN}),
    (PENDING_PM, ActorRole.PROJECT_MANAGER, Action.APPROVE): frozenset({PENDING_ADMIN}),
    # PM rejection is a recommendation; the owner/admin makes the final call
    (PENDING_PM, ActorRole.PROJECT_MANAGER, Action.REJECT): frozenset({PENDING_ADMIN}),
    (PENDING_ADMIN, ActorRole.ADMIN, Action.APPROVE): frozenset({APPROVED}),
    (PENDING_ADMIN, ActorRole.ADMIN, Action.REJECT): frozenset({REJECTED}),
}

# Legacy flat review state, read per reviewing role
LEGACY_ALIASES: dict[str, dict[ActorRole, str]] = {
    SUBMITTED: {
        ActorRole.PROJECT_MANAGER: PENDING_PM,
        ActorRole.ADMIN: PENDING_ADMIN,
    },
}

# Tried in this order; the first role with a table row wins
ROLE_PRECEDENCE = (ActorRole.ADMIN, ActorRole.PROJECT_MANAGER, ActorRole.SELF)


def normalize_status(status: str, actor_role: ActorRole) -> str:
    return LEGACY_ALIASES.get(status, {}).get(actor_role, status)


def allowed_targets(status: str, actor_role: ActorRole, action: Action) -> frozenset[str]:
    return TRANSITIONS.get((normalize_status(status, actor_role), actor_role, action), frozenset())


def next_status(
    status: str,
    actor_role: ActorRole,
    action: Action,
    *,
    has_project_manager: bool = False,
) -> str:
    targets = allowed_targets(status, actor_role, action)
    if not targets:
        raise InvalidTransition(
            f"Cannot {action.value} an entry in status '{status}' as {actor_role.value}",
            {"status": status, "actor_role": actor_role.value, "action": action.value},
        )
    if len(targets) == 1:
        return next(iter(targets))
    # Only submit fans out: PM review first when the project has one
    return PENDING_PM if has_project_manager else PENDING_ADMIN


def actor_roles(ctx: ActorContext, owner_id: uuid.UUID, project_id: uuid.UUID) -> list[ActorRole]:
    """Roles the actor holds for one entry, in precedence order."""
    roles = []
    if ctx.is_admin:
        roles.append(ActorRole.ADMIN)
    # A PM never reviews their own time
    if ctx.manages(project_id) and ctx.user_id != owner_id:
        roles.append(ActorRole.PROJECT_MANAGER)
    if ctx.user_id == owner_id:
        roles.append(ActorRole.SELF)
    return sorted(roles, key=ROLE_PRECEDENCE.index)


def route(
    status: str,
    roles: list[ActorRole],
    action: Action,
    *,
    has_project_manager: bool = False,
) -> tuple[ActorRole, str]:
    """Pick the acting role and the successor status for one entry."""
    for role in roles:
        if allowed_targets(status, role, action):
            return role, next_status(status, role, action, has_project_manager=has_project_manager)
    raise InvalidTransition(
        f"Cannot {action.value} an entry in status '{status}'",
        {
            "status": status,
            "action": action.value,
            "actor_roles": [r.value for r in roles],
        },
    )

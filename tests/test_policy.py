import itertools
import uuid
import pytest

from worklog.core.errors import InvalidTransition
from worklog.core.rbac.context import ActorContext
from worklog.core.timesheets import policy
from worklog.core.timesheets.policy import Action, ActorRole

STATUSES = ("draft", "pending_pm", "pending_admin", "approved", "rejected")

EXPECTED = {
    ("draft", ActorRole.SELF, Action.SUBMIT): {"pending_pm", "pending_admin"},
    ("pending_pm", ActorRole.PROJECT_MANAGER, Action.APPROVE): {"pending_admin"},
    ("pending_pm", ActorRole.PROJECT_MANAGER, Action.REJECT): {"pending_admin"},
    ("pending_admin", ActorRole.ADMIN, Action.APPROVE): {"approved"},
    ("pending_admin", ActorRole.ADMIN, Action.REJECT): {"rejected"},
}


@pytest.mark.parametrize(
    "status,role,action",
    list(itertools.product(STATUSES, list(ActorRole), list(Action))),
)
def test_transition_table_is_exhaustive(status, role, action):
    expected = EXPECTED.get((status, role, action), set())
    assert set(policy.allowed_targets(status, role, action)) == expected
    if not expected:
        with pytest.raises(InvalidTransition):
            policy.next_status(status, role, action)


def test_submit_goes_to_pm_when_project_has_one():
    assert policy.next_status("draft", ActorRole.SELF, Action.SUBMIT, has_project_manager=True) == "pending_pm"
    assert policy.next_status("draft", ActorRole.SELF, Action.SUBMIT, has_project_manager=False) == "pending_admin"


def test_terminal_states_have_no_successors():
    for status, role, action in itertools.product(("approved", "rejected"), ActorRole, Action):
        assert not policy.allowed_targets(status, role, action)


def test_legacy_submitted_reads_per_reviewer():
    assert policy.normalize_status("submitted", ActorRole.PROJECT_MANAGER) == "pending_pm"
    assert policy.normalize_status("submitted", ActorRole.ADMIN) == "pending_admin"
    assert policy.normalize_status("submitted", ActorRole.SELF) == "submitted"
    assert policy.next_status("submitted", ActorRole.PROJECT_MANAGER, Action.APPROVE) == "pending_admin"
    assert policy.next_status("submitted", ActorRole.ADMIN, Action.REJECT) == "rejected"


def test_admin_cannot_act_on_pending_pm():
    with pytest.raises(InvalidTransition):
        policy.route("pending_pm", [ActorRole.ADMIN], Action.APPROVE)


def test_route_prefers_admin_over_pm():
    role, target = policy.route(
        "submitted", [ActorRole.ADMIN, ActorRole.PROJECT_MANAGER], Action.APPROVE,
    )
    assert role == ActorRole.ADMIN
    assert target == "approved"


def test_route_error_carries_roles():
    with pytest.raises(InvalidTransition) as exc:
        policy.route("approved", [ActorRole.SELF], Action.SUBMIT)
    assert exc.value.details["actor_roles"] == ["self"]
    assert exc.value.status_code == 409


def test_pm_never_reviews_own_entry():
    pm_id, project_id = uuid.uuid4(), uuid.uuid4()
    ctx = ActorContext(
        user_id=pm_id, tenant_id=uuid.uuid4(), role="project_manager",
        managed_project_ids=frozenset({project_id}),
    )
    assert policy.actor_roles(ctx, pm_id, project_id) == [ActorRole.SELF]
    assert policy.actor_roles(ctx, uuid.uuid4(), project_id) == [ActorRole.PROJECT_MANAGER]
    assert policy.actor_roles(ctx, uuid.uuid4(), uuid.uuid4()) == []


def test_owner_role_orders_admin_first():
    owner_id, project_id = uuid.uuid4(), uuid.uuid4()
    ctx = ActorContext(
        user_id=owner_id, tenant_id=uuid.uuid4(), role="owner",
        managed_project_ids=frozenset({project_id}),
    )
    assert policy.actor_roles(ctx, owner_id, project_id) == [ActorRole.ADMIN, ActorRole.SELF]
    assert policy.actor_roles(ctx, uuid.uuid4(), project_id) == [ActorRole.ADMIN, ActorRole.PROJECT_MANAGER]

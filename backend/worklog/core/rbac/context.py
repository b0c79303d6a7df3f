import uuid
from dataclasses import dataclass, field

ADMIN_ROLES = frozenset({"owner", "admin"})


@dataclass(frozen=True)
class ActorContext:
    """
    Who is acting, and in which tenant.
    Built once per request and passed explicitly into every core operation;
    tenant_id is the effective tenant (a superadmin may act inside another).
    """
    user_id: uuid.UUID
    tenant_id: uuid.UUID
    role: str
    is_superadmin: bool = False
    managed_project_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.is_superadmin or self.role in ADMIN_ROLES

    @property
    def is_member(self) -> bool:
        return self.role == "member" and not self.is_superadmin

    def manages(self, project_id: uuid.UUID | None) -> bool:
        return project_id is not None and project_id in self.managed_project_ids

    @property
    def is_reviewer(self) -> bool:
        return self.is_admin or self.role == "project_manager" or bool(self.managed_project_ids)

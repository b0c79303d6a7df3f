from logging.config import fileConfig
from alembic import context
from sqlalchemy import engine_from_config, pool
from worklog.db.base import Base  # noqa
from worklog.core.tenants.models import Tenant  # noqa
from worklog.core.rbac.models import User, ProjectMember  # noqa
from worklog.core.audit.models import AuditLog  # noqa
from worklog.core.projects.models import Project, Milestone, Task  # noqa
from worklog.core.timesheets.models import TimesheetEntry, ApprovalEvent  # noqa
from worklog.core.timer.models import ClockSession  # noqa
from worklog.core.notifications.models import Notification, OutboxMessage  # noqa
from worklog.settings import get_settings

config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name)
target_metadata = Base.metadata


def get_url() -> str:
    return get_settings().DATABASE_SYNC_URL


def run_migrations_offline() -> None:
    context.configure(
        url=get_url(), target_metadata=target_metadata, literal_binds=True,
        dialect_opts={"paramstyle": "named"}, compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    cfg = config.get_section(config.config_ini_section, {})
    cfg["sqlalchemy.url"] = get_url()
    connectable = engine_from_config(cfg, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        # SQLite cannot ALTER most constraints in place
        context.configure(
            connection=connection, target_metadata=target_metadata, compare_type=True,
            render_as_batch=connection.dialect.name == "sqlite",
        )
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

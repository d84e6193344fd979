"""Alembic environment configuration for async SQLAlchemy."""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from visaflow.config import settings
from visaflow.database import Base
from visaflow.models.case import Case, CaseDocument, CaseMilestone, CaseTimelineEntry  # noqa: F401
from visaflow.models.escrow import Escrow, EscrowDispute, EscrowMilestone, EscrowTimelineEntry  # noqa: F401
from visaflow.models.notification import Notification  # noqa: F401
from visaflow.models.proposal import Proposal, ProposalMilestone  # noqa: F401
from visaflow.models.review import Review  # noqa: F401
from visaflow.models.user import User  # noqa: F401
from visaflow.models.visa_request import VisaRequest  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:  # type: ignore[no-untyped-def]
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_async_engine(settings.database_url)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

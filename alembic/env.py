"""Migrations for the node deployer schema. The URL comes from DeployerSettings."""

from logging.config import fileConfig

from alembic import context

from node_deployer.config import get_settings
from node_deployer.infrastructure.postgres import models  # noqa: F401  registers tables
from node_deployer.infrastructure.postgres.database import Base, create_db_engine

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# alembic -x url=... overrides the configured database
database_url = context.get_x_argument(as_dictionary=True).get("url") or get_settings().sqlalchemy_url


def run_offline() -> None:
    context.configure(
        url=database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_online() -> None:
    engine = create_db_engine(database_url)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    run_online()

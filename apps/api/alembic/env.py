from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from foodcrm.core.config import get_settings
from foodcrm.core.database import Base
from foodcrm.auth import models as auth_models  # noqa: F401
from foodcrm.authz import models as authz_models  # noqa: F401
from foodcrm.catalog import models as catalog_models  # noqa: F401
from foodcrm.crm import models as crm_models  # noqa: F401
from foodcrm.models import audit  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    url = get_settings().database_url
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = get_settings().database_url
    connectable = engine_from_config(
        section,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

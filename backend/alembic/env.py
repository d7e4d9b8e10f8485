from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context

from supportdesk.config import settings
from supportdesk.database import Base
# Register every model with Base.metadata
import supportdesk.models.conversation  # noqa: F401
import supportdesk.models.conversation_event  # noqa: F401
import supportdesk.models.file  # noqa: F401
import supportdesk.models.job  # noqa: F401
import supportdesk.models.mailbox  # noqa: F401
import supportdesk.models.message  # noqa: F401
import supportdesk.models.user_profile  # noqa: F401

config = context.config
config.set_main_option("sqlalchemy.url", settings.DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()

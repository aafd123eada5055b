"""
Migration Runner - Applies Alembic migrations at application startup.

Only used when RUN_MIGRATIONS_ON_STARTUP is set; deployments that run
`alembic upgrade head` as a release step leave it off.
"""

from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import Engine, create_engine
from structlog import get_logger

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from app.config import settings

logger = get_logger(__name__)

# Path to alembic.ini relative to project root
ALEMBIC_INI_PATH = Path(__file__).parent.parent.parent / "alembic.ini"


@dataclass(frozen=True)
class MigrationStatus:
    """Current vs head revision."""

    current_revision: str | None
    head_revision: str | None

    @property
    def pending(self) -> bool:
        """True when the database is behind the migration scripts."""
        return self.current_revision != self.head_revision


def sync_database_url(url: str) -> str:
    """
    Synchronous URL for Alembic.

    Alembic's command API uses synchronous connections, so asyncpg URLs
    are converted to psycopg2.
    """
    return url.replace("+asyncpg", "+psycopg2")


def _alembic_config() -> Config:
    alembic_cfg = Config(str(ALEMBIC_INI_PATH))
    alembic_cfg.set_main_option(
        "sqlalchemy.url", sync_database_url(settings.database_url).replace("%", "%%")
    )
    return alembic_cfg


def _get_current_revision(engine: Engine) -> str | None:
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        return context.get_current_revision()


def _get_head_revision(alembic_cfg: Config) -> str | None:
    script = ScriptDirectory.from_config(alembic_cfg)
    return script.get_current_head()


def check_migrations_status() -> MigrationStatus:
    """Check migration status without applying anything."""
    alembic_cfg = _alembic_config()
    engine = create_engine(sync_database_url(settings.database_url))
    try:
        return MigrationStatus(
            current_revision=_get_current_revision(engine),
            head_revision=_get_head_revision(alembic_cfg),
        )
    finally:
        engine.dispose()


def run_migrations() -> None:
    """
    Run pending Alembic migrations.

    Raises:
        RuntimeError: A migration failed; the application must not start
    """
    if not ALEMBIC_INI_PATH.exists():
        logger.warning("alembic_config_missing", path=str(ALEMBIC_INI_PATH))
        return

    try:
        migration_status = check_migrations_status()
        if not migration_status.pending:
            logger.info("database_schema_current", revision=migration_status.current_revision)
            return

        logger.info(
            "database_migrations_running",
            from_revision=migration_status.current_revision,
            to_revision=migration_status.head_revision,
        )
        command.upgrade(_alembic_config(), "head")
        logger.info("database_migrations_complete", revision=migration_status.head_revision)

    except Exception as e:
        logger.error("database_migration_failed", error=str(e))
        raise RuntimeError(f"Database migration failed: {e}") from e

"""SQL migrations applied on startup for the postgres store backend."""
from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Awaitable, Callable, Iterable

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

from webhook_service.settings import Settings

logger = structlog.get_logger(__name__)

DEFAULT_MIGRATION_PATHS = (
    Path(__file__).resolve().parents[3] / "migrations",
    Path.cwd() / "migrations",
)


def _find_migrations_dir(possible_paths: list[Path]) -> Path | None:
    for path in possible_paths:
        if path.exists():
            return path
    return None


def load_migrations(directory: Path) -> dict[str, Path]:
    migrations: dict[str, Path] = {}
    for path in sorted(directory.glob("*.sql")):
        version = path.stem
        if version in migrations:
            raise ValueError(f"Duplicate migration version detected: {version}")
        migrations[version] = path
    return migrations


async def apply_migrations(conn: asyncpg.Connection, migrations: dict[str, Path]) -> int:
    """Apply pending migrations on *conn*; returns how many were applied."""
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version text PRIMARY KEY,
            checksum text NOT NULL,
            applied_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    applied = {row["version"]: row["checksum"] for row in rows}
    pending = []
    for version, path in migrations.items():
        sql = path.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql.encode("utf-8")).hexdigest()
        if version in applied:
            if applied[version] != checksum:
                raise RuntimeError(
                    f"Checksum mismatch for {version}: "
                    f"{applied[version]} (db) != {checksum} (file)"
                )
            continue
        pending.append((version, path, sql, checksum))

    for version, path, sql, checksum in pending:
        logger.info("Applying migration", migration=path.name)
        async with conn.transaction():
            await conn.execute(sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                version,
                checksum,
            )
    return len(pending)


def create_migration_runner(
    settings: Settings,
    possible_paths: Iterable[Path] = DEFAULT_MIGRATION_PATHS,
    *,
    max_retries: int = 5,
    retry_delay: float = 2.0,
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook to apply SQL migrations."""
    possible_paths_list = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = _find_migrations_dir(possible_paths_list)
        if migrations_dir is None:
            logger.warning("Migrations directory not found", tried=[str(p) for p in possible_paths_list])
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("No migrations found", directory=str(migrations_dir))
            return

        conn = None
        for attempt in range(1, max_retries + 1):
            try:
                conn = await asyncpg.connect(str(settings.database_url))
                break
            except (OSError, asyncpg.PostgresError) as exc:
                logger.warning(
                    "Database connection error",
                    attempt=attempt,
                    max_retries=max_retries,
                    error=str(exc),
                )
                if attempt == max_retries:
                    raise
                await asyncio.sleep(retry_delay)
        assert conn is not None

        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("Migrations up to date", applied=applied)

    return apply_migrations_on_startup

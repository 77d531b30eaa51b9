from __future__ import annotations

import hashlib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from webhook_service.db.migrations import DEFAULT_MIGRATION_PATHS, apply_migrations, load_migrations


class _Transaction:
    async def __aenter__(self):
        return None

    async def __aexit__(self, *exc):
        return False


def _conn(applied_rows):
    conn = AsyncMock()
    conn.fetch.return_value = applied_rows
    conn.transaction = MagicMock(side_effect=lambda: _Transaction())
    return conn


def test_bundled_migrations_are_found():
    directory = next(p for p in DEFAULT_MIGRATION_PATHS if p.exists())
    assert "001_webhooks" in load_migrations(directory)


def test_load_migrations_sorted(tmp_path: Path):
    (tmp_path / "002_b.sql").write_text("SELECT 2;")
    (tmp_path / "001_a.sql").write_text("SELECT 1;")
    (tmp_path / "notes.txt").write_text("ignored")

    assert list(load_migrations(tmp_path)) == ["001_a", "002_b"]


@pytest.mark.asyncio
async def test_apply_only_pending(tmp_path: Path):
    (tmp_path / "001_a.sql").write_text("SELECT 1;")
    (tmp_path / "002_b.sql").write_text("SELECT 2;")
    checksum = hashlib.sha256(b"SELECT 1;").hexdigest()
    conn = _conn([{"version": "001_a", "checksum": checksum}])

    applied = await apply_migrations(conn, load_migrations(tmp_path))

    assert applied == 1
    executed = [call.args[0] for call in conn.execute.await_args_list]
    assert "SELECT 2;" in executed
    assert "SELECT 1;" not in executed


@pytest.mark.asyncio
async def test_checksum_mismatch_aborts(tmp_path: Path):
    (tmp_path / "001_a.sql").write_text("SELECT 1;")
    conn = _conn([{"version": "001_a", "checksum": "stale"}])

    with pytest.raises(RuntimeError, match="Checksum mismatch"):
        await apply_migrations(conn, load_migrations(tmp_path))

"""Unit tests for the RetentionService.

Tests cover:
- purge_expired() issues one DELETE per operational table and commits once
- purge_expired() returns per-table deleted counts
- purge_expired() treats a missing rowcount as zero
- purge_expired() logs the cutoff and the summary
- Error handling when a DELETE fails

All tests mock the SQLAlchemy AsyncSession.  No live database is required.
"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from activity_harvester.core.retention_service import RetentionService
from tests.factories import FIXED_NOW


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_mock_session(rowcounts: list[int | None]) -> MagicMock:
    """Build a mock AsyncSession whose execute() returns successive rowcounts."""
    session = MagicMock()
    results = []
    for rowcount in rowcounts:
        result = MagicMock()
        result.rowcount = rowcount
        results.append(result)
    session.execute = AsyncMock(side_effect=results)
    session.commit = AsyncMock()
    return session


# ---------------------------------------------------------------------------
# purge_expired()
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestPurgeExpired:
    async def test_returns_deleted_counts_per_table(self) -> None:
        db = _make_mock_session([4, 11])

        summary = await RetentionService().purge_expired(db, now=FIXED_NOW)

        assert summary == {"scraping_tasks": 4, "scraping_executions": 11}

    async def test_issues_two_deletes_and_commits_once(self) -> None:
        db = _make_mock_session([0, 0])

        await RetentionService().purge_expired(db, now=FIXED_NOW)

        assert db.execute.await_count == 2
        db.commit.assert_awaited_once()

    async def test_delete_statements_target_operational_tables(self) -> None:
        db = _make_mock_session([0, 0])

        await RetentionService().purge_expired(db, now=FIXED_NOW)

        tables = [c.args[0].table.name for c in db.execute.await_args_list]
        assert tables == ["scraping_tasks", "scraping_executions"]

    async def test_missing_rowcount_counts_as_zero(self) -> None:
        db = _make_mock_session([None, None])

        summary = await RetentionService().purge_expired(db, now=FIXED_NOW)

        assert summary == {"scraping_tasks": 0, "scraping_executions": 0}

    async def test_defaults_cutoff_to_current_time(self) -> None:
        db = _make_mock_session([1, 2])

        summary = await RetentionService().purge_expired(db)

        assert summary["scraping_executions"] == 2

    async def test_logs_summary(self, caplog: pytest.LogCaptureFixture) -> None:
        db = _make_mock_session([3, 5])

        with caplog.at_level(logging.INFO, logger="activity_harvester.core.retention_service"):
            await RetentionService().purge_expired(db, now=FIXED_NOW)

        records = [r for r in caplog.records if r.getMessage() == "retention_purge_complete"]
        assert len(records) == 1
        assert records[0].scraping_tasks == 3
        assert records[0].scraping_executions == 5
        assert records[0].cutoff == FIXED_NOW.isoformat()

    async def test_delete_failure_propagates_without_commit(self) -> None:
        db = MagicMock()
        db.execute = AsyncMock(side_effect=OperationalError("DELETE ...", {}, Exception("gone")))
        db.commit = AsyncMock()

        with pytest.raises(OperationalError):
            await RetentionService().purge_expired(db, now=FIXED_NOW)

        db.commit.assert_not_awaited()

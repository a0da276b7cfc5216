"""Tests for the APScheduler wiring of the nudge sweep."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from voyaj import scheduler as scheduler_module
from voyaj.scheduler import (
    NUDGE_JOB_ID,
    get_scheduler_status,
    run_nudge_sweep,
    start_scheduler,
    stop_scheduler,
)
from voyaj.services.nudges import SweepSummary


@pytest.fixture(autouse=True)
async def clean_scheduler():
    stop_scheduler()
    yield
    stop_scheduler()


def mock_nudger(summary=None, error=None):
    nudger = MagicMock()
    nudger.sweep = AsyncMock(return_value=summary, side_effect=error)
    return nudger


class TestScheduler:
    @pytest.mark.asyncio
    async def test_start_registers_nudge_job(self):
        start_scheduler(mock_nudger())

        status = get_scheduler_status()
        assert status["running"] is True
        assert [job["id"] for job in status["jobs"]] == [NUDGE_JOB_ID]
        assert status["next_run"] is not None

    @pytest.mark.asyncio
    async def test_stop_resets_state(self):
        start_scheduler(mock_nudger())
        stop_scheduler()

        assert get_scheduler_status() == {"running": False, "jobs": [], "next_run": None}
        assert scheduler_module.scheduler is None

    def test_status_when_never_started(self):
        assert get_scheduler_status()["running"] is False


class TestRunNudgeSweep:
    @pytest.mark.asyncio
    async def test_without_nudger(self):
        assert await run_nudge_sweep() is None

    @pytest.mark.asyncio
    async def test_returns_summary(self):
        scheduler_module._nudger = mock_nudger(SweepSummary(checked=3, nudged=1, abandoned=1))

        result = await run_nudge_sweep()

        assert result == {"checked": 3, "nudged": 1, "advanced": 0, "abandoned": 1, "errors": 0}

    @pytest.mark.asyncio
    async def test_errors_are_swallowed_for_the_job(self):
        scheduler_module._nudger = mock_nudger(error=RuntimeError("db down"))

        assert await run_nudge_sweep() is None

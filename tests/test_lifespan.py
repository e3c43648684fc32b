"""Application startup, shutdown and tick draining."""

import asyncio
import logging
from datetime import timedelta

import pytest

import main
from assignment.application import PHASE_EXPIRE_STAFF
from assignment.infrastructure import SQLAlchemyStaffRepository
from config import settings
from shared.infrastructure.logging import setup_logging

from conftest import NOW


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def app_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{tmp_path / 'app.db'}")
    monkeypatch.setattr(settings, "tick_interval_seconds", 0)
    monkeypatch.setattr(settings, "escalation_config_path", tmp_path / "escalation.yaml")
    monkeypatch.setattr(settings, "notification_webhook_url", None)
    yield
    for name in ("orchestrator", "assignment_service", "config_manager", "shutdown_event"):
        if hasattr(main.app.state, name):
            delattr(main.app.state, name)


async def test_lifespan_starts_and_stops(app_settings, restore_logging):
    async with main.lifespan(main.app):
        orchestrator = main.app.state.orchestrator
        report = await orchestrator.run_tick()
        assert report.skipped is False
        assert len(report.phases) == 4
        assert report.failed_phases == []

    assert main.app.state.shutdown_event.is_set()
    assert not orchestrator.is_running


def test_environment_stamped_without_clashing_with_extra(restore_logging):
    setup_logging("INFO", "staging")
    records = []
    handler = logging.getLogger().handlers[0]
    handler.emit = records.append

    logging.getLogger("orchestrator.test").info("hello", extra={"environment": "override"})
    logging.getLogger("orchestrator.test").info("plain")

    assert [record.environment for record in records] == ["override", "staging"]


class TestDrainTicks:
    async def _blocked_tick(self, store, orchestrator, monkeypatch, cancel):
        await store.staff("S", auto_offline_at=NOW - timedelta(minutes=1))
        release = asyncio.Event()
        entered = asyncio.Event()
        original = SQLAlchemyStaffRepository.list_auto_offline_due

        async def slow(self, now):
            entered.set()
            await release.wait()
            return await original(self, now)

        monkeypatch.setattr(SQLAlchemyStaffRepository, "list_auto_offline_due", slow)
        tick = asyncio.create_task(orchestrator.run_tick(cancel_event=cancel))
        await entered.wait()
        return tick, release

    async def test_shutdown_aborts_tick_between_phases(self, store, orchestrator, monkeypatch):
        cancel = asyncio.Event()
        tick, release = await self._blocked_tick(store, orchestrator, monkeypatch, cancel)

        drain = asyncio.create_task(main.drain_ticks(orchestrator, cancel, timeout=5))
        await asyncio.sleep(0)
        assert cancel.is_set()
        assert not drain.done()

        release.set()
        assert await drain is True

        report = await tick
        assert report.aborted is True
        assert [phase.name for phase in report.phases] == [PHASE_EXPIRE_STAFF]
        # Cancelled before the first record, nothing was written
        assert report.phase(PHASE_EXPIRE_STAFF).selected == 1
        assert report.phase(PHASE_EXPIRE_STAFF).changed == 0
        assert (await store.get_staff("S")).is_available is True

    async def test_drain_gives_up_after_timeout(self, store, orchestrator, monkeypatch):
        cancel = asyncio.Event()
        tick, release = await self._blocked_tick(store, orchestrator, monkeypatch, cancel)

        assert await main.drain_ticks(orchestrator, cancel, timeout=0.05) is False

        release.set()
        assert (await tick).aborted is True

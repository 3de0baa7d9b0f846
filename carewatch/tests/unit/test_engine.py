"""Unit tests for engine wiring."""

import asyncio
import logging

import pytest

from carewatch.core.config import Settings
from carewatch.engine import MonitoringEngine
from carewatch.models.enums import AlertType, SchedulerState
from carewatch.services.store import InMemoryRecordStore
from carewatch.tests.factories import FakePoseEstimator


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        sampling_interval_ms=10,
        status_debounce_ticks=2,
        motion_history_size=5,
    )


class TestMonitoringEngine:
    @pytest.mark.asyncio
    async def test_components_require_start(self, settings):
        engine = MonitoringEngine(FakePoseEstimator(), lambda: None, settings=settings)
        with pytest.raises(RuntimeError):
            _ = engine.dispatcher

    @pytest.mark.asyncio
    async def test_memory_backend_monitoring_round_trip(self, settings):
        estimator = FakePoseEstimator()
        async with MonitoringEngine(estimator, lambda: object(), settings=settings) as engine:
            assert isinstance(engine.store, InMemoryRecordStore)
            session = await engine.sessions.start_monitoring("resident-1")
            scheduler = engine.sessions.scheduler_for("resident-1")
            assert scheduler.state == SchedulerState.RUNNING
            assert scheduler._status_filter.required_ticks == 2

            for _ in range(100):
                if estimator.detect_calls >= 2:
                    break
                await asyncio.sleep(0.01)

            await engine.sessions.stop_monitoring(session.id)
            assert scheduler.state == SchedulerState.IDLE

        assert estimator.detect_calls >= 2

    @pytest.mark.asyncio
    async def test_observer_receives_system_notifications(self, settings):
        async with MonitoringEngine(
            FakePoseEstimator(), lambda: None, settings=settings, observer_id="caregiver-1"
        ) as engine:
            await engine.sessions.start_session("resident-1")
            for _ in range(100):
                if await engine.dispatcher.recent_alerts("caregiver-1"):
                    break
                await asyncio.sleep(0.01)
            alerts = await engine.dispatcher.recent_alerts("caregiver-1")

        assert [a.type for a in alerts] == [AlertType.STREAM_STARTED]

    @pytest.mark.asyncio
    async def test_live_config_shared_with_schedulers(self, settings):
        async with MonitoringEngine(FakePoseEstimator(), lambda: None, settings=settings) as engine:
            scheduler = engine.make_scheduler("resident-1")
            engine.config.sensitivity = 90
            assert scheduler.config.sensitivity == 90

    @pytest.mark.asyncio
    async def test_startup_log_names_app_and_version(self, caplog):
        settings = Settings(_env_file=None, app_name="Ward 3 Monitor", app_version="2.4.1")
        caplog.set_level(logging.INFO, logger="carewatch.engine")

        async with MonitoringEngine(FakePoseEstimator(), lambda: None, settings=settings):
            pass

        started = [
            r.getMessage()
            for r in caplog.records
            if r.name == "carewatch.engine" and "started" in r.getMessage()
        ]
        assert started == ["Ward 3 Monitor 2.4.1 started (store=memory)"]

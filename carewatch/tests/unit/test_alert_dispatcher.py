"""Unit tests for alert creation, system notification fan-out and cooldown."""

import asyncio
import logging

import pytest

from carewatch.core.exceptions import StorePermissionError, StoreUnavailableError
from carewatch.models.alert import AlertEvent, SystemNotification
from carewatch.models.enums import AlertSeverity, AlertType
from carewatch.services.alert_dispatcher import (
    AlertDispatcher,
    CandidateCooldown,
    NotificationObserver,
    generate_record_id,
)
from carewatch.services.detection_state import FALL_CANDIDATE, MOTION_CANDIDATE
from carewatch.services.store import (
    COLLECTION_ALERTS,
    COLLECTION_SYSTEM_NOTIFICATIONS,
)


class TestGenerateRecordId:
    def test_ids_unique_at_same_instant(self, clock):
        ids = {generate_record_id("resident-1", clock()) for _ in range(100)}
        assert len(ids) == 100

    def test_id_contains_prefix_and_timestamp(self, clock):
        record_id = generate_record_id("resident-1", clock())
        prefix, millis, suffix = record_id.rsplit("_", 2)
        assert prefix == "resident-1"
        assert int(millis) == int(clock().timestamp() * 1000)
        assert len(suffix) == 12


class TestCreateAlert:
    """Tests for AlertDispatcher.create_alert."""

    @pytest.mark.asyncio
    async def test_creates_unread_alert(self, dispatcher, store, clock):
        alert = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1")

        assert alert.subject_id == "resident-1"
        assert alert.type == AlertType.FALL_DETECTED
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.read is False
        assert alert.timestamp == clock()
        stored = await store.get(COLLECTION_ALERTS, alert.id)
        assert AlertEvent.model_validate(stored) == alert

    @pytest.mark.asyncio
    async def test_identical_candidates_get_distinct_ids(self, dispatcher, store):
        """Same content at the same logical time is neither merged nor suppressed."""
        first = await dispatcher.create_alert(MOTION_CANDIDATE, "resident-1")
        second = await dispatcher.create_alert(MOTION_CANDIDATE, "resident-1")

        assert first.id != second.id
        assert len(await dispatcher.recent_alerts("resident-1")) == 2

    @pytest.mark.asyncio
    async def test_transient_failure_returns_none(self, dispatcher, store):
        store.fail_next("put_if_absent", StoreUnavailableError())
        assert await dispatcher.create_alert(FALL_CANDIDATE, "resident-1") is None
        assert await dispatcher.recent_alerts("resident-1") == []

    @pytest.mark.asyncio
    async def test_permission_error_propagates(self, dispatcher, store):
        store.fail_next("put_if_absent", StorePermissionError())
        with pytest.raises(StorePermissionError):
            await dispatcher.create_alert(FALL_CANDIDATE, "resident-1")

    @pytest.mark.asyncio
    async def test_retry_with_same_id_is_idempotent(self, dispatcher, store):
        first = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1", alert_id="fixed")
        again = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1", alert_id="fixed")

        assert first is not None
        assert again is not None
        assert len(await dispatcher.recent_alerts("resident-1")) == 1

    @pytest.mark.asyncio
    async def test_explicit_id_returns_existing_record(self, dispatcher, store, clock):
        first = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1", alert_id="fixed")
        clock.advance(5)

        again = await dispatcher.create_alert(MOTION_CANDIDATE, "resident-1", alert_id="fixed")

        assert again == first
        stored = await store.get(COLLECTION_ALERTS, "fixed")
        assert stored["type"] == "fall_detected"


class TestAlertViews:
    @pytest.mark.asyncio
    async def test_recent_alerts_newest_first_and_limited(self, store, clock):
        dispatcher = AlertDispatcher(store, clock=clock, history_limit=2)
        for _ in range(3):
            await dispatcher.create_alert(MOTION_CANDIDATE, "resident-1")
            clock.advance(1)
        await dispatcher.create_alert(MOTION_CANDIDATE, "resident-2")

        alerts = await dispatcher.recent_alerts("resident-1")

        assert len(alerts) == 2
        assert alerts[0].timestamp > alerts[1].timestamp
        assert all(a.subject_id == "resident-1" for a in alerts)
        assert len(await dispatcher.recent_alerts("resident-1", limit=10)) == 3

    @pytest.mark.asyncio
    async def test_mark_read(self, dispatcher):
        alert = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1")
        assert await dispatcher.mark_read(alert.id) is True
        assert (await dispatcher.recent_alerts("resident-1"))[0].read is True

    @pytest.mark.asyncio
    async def test_mark_read_missing_is_ignored(self, dispatcher):
        assert await dispatcher.mark_read("does-not-exist") is False

    @pytest.mark.asyncio
    async def test_mark_read_transient_failure(self, dispatcher, store):
        alert = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1")
        store.fail_next("update", StoreUnavailableError())
        assert await dispatcher.mark_read(alert.id) is False

    @pytest.mark.asyncio
    async def test_send_test_alert(self, dispatcher):
        alert = await dispatcher.send_test_alert("resident-1")
        assert alert.type == AlertType.TEST
        assert alert.severity == AlertSeverity.INFO

    @pytest.mark.asyncio
    async def test_watch_alerts(self, dispatcher):
        stream = dispatcher.watch_alerts("resident-1")
        assert await anext(stream) == []
        alert = await dispatcher.create_alert(FALL_CANDIDATE, "resident-1")
        emitted = await asyncio.wait_for(anext(stream), timeout=1)
        assert [a.id for a in emitted] == [alert.id]
        await stream.aclose()


class TestSystemNotifications:
    """Tests for notification creation and per-observer conversion."""

    @pytest.mark.asyncio
    async def test_creator_is_marked_processed(self, dispatcher):
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
        assert notification.processed_by == {"resident-1"}
        listed = await dispatcher.recent_system_notifications()
        assert listed == [notification]

    @pytest.mark.asyncio
    async def test_observer_converts_once(self, dispatcher, store):
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")

        alert = await dispatcher.process_system_notification(notification, "caregiver-1")

        assert alert.subject_id == "caregiver-1"
        assert alert.type == AlertType.FALL_DETECTED
        stored = SystemNotification.model_validate(
            await store.get(COLLECTION_SYSTEM_NOTIFICATIONS, notification.id)
        )
        assert stored.processed_by == {"resident-1", "caregiver-1"}
        assert await dispatcher.process_system_notification(stored, "caregiver-1") is None

    @pytest.mark.asyncio
    async def test_creator_does_not_convert_own_notification(self, dispatcher):
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
        assert await dispatcher.process_system_notification(notification, "resident-1") is None
        assert await dispatcher.recent_alerts("resident-1") == []

    @pytest.mark.asyncio
    async def test_concurrent_observers_each_get_one_alert(self, dispatcher, store):
        """Racing processed_by updates may lose entries but never duplicate alerts."""
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
        observers = [f"caregiver-{i}" for i in range(4)]

        await asyncio.gather(
            *(dispatcher.process_system_notification(notification, o) for o in observers)
        )
        # Re-run against a stale copy, as an observer that missed its update would
        await asyncio.gather(
            *(dispatcher.process_system_notification(notification, o) for o in observers)
        )

        for observer in observers:
            assert len(await dispatcher.recent_alerts(observer)) == 1
        stored = await store.get(COLLECTION_SYSTEM_NOTIFICATIONS, notification.id)
        assert "resident-1" in stored["processed_by"]

    @pytest.mark.asyncio
    async def test_late_reconversion_is_quiet(self, dispatcher, store, clock, caplog):
        """A stale copy converted after the clock moved on repairs processed_by silently."""
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
        first = await dispatcher.process_system_notification(notification, "caregiver-1")
        await store.update(
            COLLECTION_SYSTEM_NOTIFICATIONS, notification.id, {"processed_by": ["resident-1"]}
        )
        clock.advance(30)
        caplog.set_level(logging.DEBUG, logger="carewatch.services.alert_dispatcher")

        again = await dispatcher.process_system_notification(notification, "caregiver-1")

        assert again == first
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        stored = await store.get(COLLECTION_SYSTEM_NOTIFICATIONS, notification.id)
        assert "caregiver-1" in stored["processed_by"]
        assert len(await dispatcher.recent_alerts("caregiver-1")) == 1

    @pytest.mark.asyncio
    async def test_conversion_failure_leaves_unprocessed(self, dispatcher, store):
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
        store.fail_next("put_if_absent", StoreUnavailableError())

        assert await dispatcher.process_system_notification(notification, "caregiver-1") is None

        stored = await store.get(COLLECTION_SYSTEM_NOTIFICATIONS, notification.id)
        assert stored["processed_by"] == ["resident-1"]


class TestNotificationObserver:
    @pytest.mark.asyncio
    async def test_observer_converts_streamed_notifications(self, dispatcher):
        observer = NotificationObserver("caregiver-1", dispatcher)
        await observer.start()
        try:
            await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
            for _ in range(100):
                if await dispatcher.recent_alerts("caregiver-1"):
                    break
                await asyncio.sleep(0.01)
            alerts = await dispatcher.recent_alerts("caregiver-1")
        finally:
            await observer.stop()

        assert len(alerts) == 1
        assert not observer.is_running

    @pytest.mark.asyncio
    async def test_handle_skips_already_processed(self, dispatcher):
        observer = NotificationObserver("caregiver-1", dispatcher)
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")

        assert len(await observer.handle([notification])) == 1
        assert await observer.handle([notification]) == []

    @pytest.mark.asyncio
    async def test_handled_ids_limited_to_current_window(self, dispatcher, clock):
        observer = NotificationObserver("caregiver-1", dispatcher)
        batches = []
        for _ in range(3):
            batches.append(
                await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
            )
            clock.advance(1)

        await observer.handle(batches[:2])
        await observer.handle(batches[1:])

        assert observer._handled == {batches[1].id, batches[2].id}
        assert len(await dispatcher.recent_alerts("caregiver-1")) == 3

    @pytest.mark.asyncio
    async def test_handle_survives_permission_error(self, dispatcher, store):
        observer = NotificationObserver("caregiver-1", dispatcher)
        notification = await dispatcher.create_system_notification(FALL_CANDIDATE, "resident-1")
        store.fail_next("put_if_absent", StorePermissionError())

        assert await observer.handle([notification]) == []


class TestCandidateCooldown:
    def test_disabled_by_default(self):
        cooldown = CandidateCooldown()
        assert all(cooldown.allow("s", AlertType.MOTION_DETECTED) for _ in range(3))

    def test_suppresses_within_window(self):
        now = [0.0]
        cooldown = CandidateCooldown(10.0, clock=lambda: now[0])

        assert cooldown.allow("s", AlertType.MOTION_DETECTED)
        assert not cooldown.allow("s", AlertType.MOTION_DETECTED)
        assert cooldown.allow("s", AlertType.FALL_DETECTED)
        assert cooldown.allow("other", AlertType.MOTION_DETECTED)

        now[0] = 10.0
        assert cooldown.allow("s", AlertType.MOTION_DETECTED)

"""Alert dispatcher: identify, persist and fan out alerts.

Responsibilities:
    - Turn an AlertCandidate into a uniquely identified AlertEvent and write it
      with create-if-absent semantics
    - Create SystemNotification broadcasts and convert them into one personal
      AlertEvent per observer (NotificationObserver)
    - Mark alerts read, list recent alerts, send test alerts

Identifiers:
    Alert and notification ids are ``{prefix}_{epoch_ms}_{random}``. Two
    identical candidates created at the same instant still get distinct ids,
    so a retried write never overwrites a different alert. Personal alerts
    created from a system notification use the deterministic id
    ``{notification_id}_{observer_id}`` instead, which makes repeated
    conversion by the same observer a no-op.

Failure policy:
    Transient store failures are logged and the call returns None/False.
    StorePermissionError always propagates.

Usage:
    from carewatch.services.alert_dispatcher import AlertDispatcher

    dispatcher = AlertDispatcher(store)
    alert = await dispatcher.create_alert(candidate, subject_id="resident-1")
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any

from carewatch.core.exceptions import RecordNotFoundError, StoreError, StorePermissionError
from carewatch.core.logging import get_logger, sanitize_error
from carewatch.core.metrics import record_alert_created, record_store_failure
from carewatch.models.alert import AlertEvent, SystemNotification
from carewatch.models.detection import AlertCandidate
from carewatch.models.enums import AlertSeverity, AlertType
from carewatch.services.store import (
    COLLECTION_ALERTS,
    COLLECTION_SYSTEM_NOTIFICATIONS,
    Query,
    RecordStore,
)

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 20

TEST_CANDIDATE = AlertCandidate(
    type=AlertType.TEST,
    severity=AlertSeverity.INFO,
    title="Test Notification",
    message="This is a test notification to verify that alerts are working correctly.",
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def generate_record_id(prefix: str, now: datetime) -> str:
    """Build a globally unique id from a prefix, a timestamp and a random suffix.

    Example:
        >>> generate_record_id("resident-1", datetime(2025, 1, 1, tzinfo=UTC))
        'resident-1_1735689600000_3f2a9c1be04d'
    """
    return f"{prefix}_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:12]}"


def build_cooldown_key(subject_id: str, alert_type: AlertType | str) -> str:
    return f"{subject_id}:{alert_type}"


class CandidateCooldown:
    """Suppress repeated candidates of the same type for a subject.

    Only used in the detection path; direct create_alert calls are never
    suppressed. A cooldown of 0 disables suppression entirely.
    """

    def __init__(
        self,
        cooldown_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_emitted: dict[str, float] = {}

    def allow(self, subject_id: str, alert_type: AlertType | str) -> bool:
        """Return True and start a new cooldown window if the candidate may pass."""
        if self.cooldown_seconds <= 0:
            return True
        key = build_cooldown_key(subject_id, alert_type)
        now = self._clock()
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            logger.debug(f"Candidate {key} suppressed by cooldown")
            return False
        self._last_emitted[key] = now
        return True

    def reset(self) -> None:
        self._last_emitted.clear()


class AlertDispatcher:
    """Persists alerts and system notifications to the record store."""

    def __init__(
        self,
        store: RecordStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            store: Record store shared with observers
            clock: Source of timezone-aware timestamps
            history_limit: Default size of recent-alert views
        """
        self._store = store
        self._clock = clock
        self.history_limit = history_limit

    async def _write_once(
        self,
        collection: str,
        record_id: str,
        record: dict[str, Any],
        *,
        keep_existing: bool = False,
    ) -> dict[str, Any] | None:
        """Create-if-absent write.

        An identical existing record counts as success. With ``keep_existing``
        any existing record is accepted, which is how deterministic ids make
        repeated writes idempotent.

        Returns:
            ``record`` itself if this call wrote it, the existing record if
            one was accepted, or None on a transient failure or an id
            collision with a different record.

        Raises:
            StorePermissionError: Always propagated
        """
        try:
            if await self._store.put_if_absent(collection, record_id, record):
                return record
            existing = await self._store.get(collection, record_id)
        except StorePermissionError:
            record_store_failure("put_if_absent")
            logger.error(f"Permission denied writing {collection}/{record_id}")
            raise
        except StoreError as e:
            record_store_failure("put_if_absent")
            logger.warning(f"Failed to write {collection}/{record_id}: {sanitize_error(e)}")
            return None

        if existing is None:
            logger.warning(f"{collection}/{record_id} exists but could not be read back")
            return None
        if keep_existing or existing == record:
            logger.debug(f"{collection}/{record_id} already written by an earlier attempt")
            return existing
        logger.warning(f"Id collision on {collection}/{record_id}; keeping existing record")
        return None

    async def create_alert(
        self,
        candidate: AlertCandidate,
        subject_id: str,
        *,
        alert_id: str | None = None,
    ) -> AlertEvent | None:
        """Persist a candidate as a new AlertEvent for a subject.

        Args:
            candidate: Alert content
            subject_id: Subject the alert belongs to
            alert_id: Deterministic id for idempotent conversions; generated
                when omitted

        Returns:
            The stored AlertEvent (the earlier one when ``alert_id`` already
            exists), or None if the write did not succeed

        Raises:
            StorePermissionError: If the store rejects the write
        """
        now = self._clock()
        alert = AlertEvent(
            id=alert_id or generate_record_id(subject_id, now),
            subject_id=subject_id,
            type=candidate.type,
            severity=candidate.severity,
            title=candidate.title,
            message=candidate.message,
            timestamp=now,
            read=False,
        )
        record = alert.model_dump(mode="json")
        stored = await self._write_once(
            COLLECTION_ALERTS, alert.id, record, keep_existing=alert_id is not None
        )
        if stored is None:
            return None
        if stored is not record:
            return AlertEvent.model_validate(stored)

        record_alert_created(str(alert.type))
        logger.info(
            f"Alert {alert.id} created: type={alert.type} severity={alert.severity}",
            extra={"subject_id": subject_id, "alert_id": alert.id},
        )
        return alert

    async def create_system_notification(
        self, candidate: AlertCandidate, creator_id: str
    ) -> SystemNotification | None:
        """Broadcast a notification to every observer.

        The creator is recorded as having processed it already, since the
        creator raises its own alert directly.

        Raises:
            StorePermissionError: If the store rejects the write
        """
        now = self._clock()
        notification = SystemNotification(
            id=generate_record_id("system", now),
            created_by=creator_id,
            type=candidate.type,
            severity=candidate.severity,
            title=candidate.title,
            message=candidate.message,
            timestamp=now,
            processed_by={creator_id},
        )
        stored = await self._write_once(
            COLLECTION_SYSTEM_NOTIFICATIONS,
            notification.id,
            notification.model_dump(mode="json"),
        )
        if stored is None:
            return None
        logger.info(f"System notification {notification.id} created: type={notification.type}")
        return notification

    async def mark_read(self, alert_id: str) -> bool:
        """Set ``read=True`` on an alert.

        Returns:
            True if updated; False if the alert is gone or the store failed

        Raises:
            StorePermissionError: If the store rejects the update
        """
        try:
            await self._store.update(COLLECTION_ALERTS, alert_id, {"read": True})
        except RecordNotFoundError:
            logger.info(f"Alert {alert_id} no longer exists; ignoring mark_read")
            return False
        except StorePermissionError:
            record_store_failure("update")
            raise
        except StoreError as e:
            record_store_failure("update")
            logger.warning(f"Failed to mark alert {alert_id} read: {sanitize_error(e)}")
            return False
        return True

    async def send_test_alert(self, subject_id: str) -> AlertEvent | None:
        """Write an info-level test alert to verify the alert path end to end."""
        return await self.create_alert(TEST_CANDIDATE, subject_id)

    def _alerts_query(self, subject_id: str, limit: int | None) -> Query:
        return Query(
            collection=COLLECTION_ALERTS,
            where={"subject_id": subject_id},
            order_by="timestamp",
            descending=True,
            limit=limit or self.history_limit,
        )

    def _notifications_query(self, limit: int | None) -> Query:
        return Query(
            collection=COLLECTION_SYSTEM_NOTIFICATIONS,
            order_by="timestamp",
            descending=True,
            limit=limit or self.history_limit,
        )

    async def recent_alerts(self, subject_id: str, limit: int | None = None) -> list[AlertEvent]:
        """Return a subject's alerts, newest first."""
        records = await self._store.query(self._alerts_query(subject_id, limit))
        return [AlertEvent.model_validate(r) for r in records]

    async def watch_alerts(
        self, subject_id: str, limit: int | None = None
    ) -> AsyncIterator[list[AlertEvent]]:
        """Stream the subject's recent alerts after every change."""
        async for records in self._store.subscribe(self._alerts_query(subject_id, limit)):
            yield [AlertEvent.model_validate(r) for r in records]

    async def recent_system_notifications(
        self, limit: int | None = None
    ) -> list[SystemNotification]:
        records = await self._store.query(self._notifications_query(limit))
        return [SystemNotification.model_validate(r) for r in records]

    async def watch_system_notifications(
        self, limit: int | None = None
    ) -> AsyncIterator[list[SystemNotification]]:
        async for records in self._store.subscribe(self._notifications_query(limit)):
            yield [SystemNotification.model_validate(r) for r in records]

    async def process_system_notification(
        self, notification: SystemNotification, observer_id: str
    ) -> AlertEvent | None:
        """Convert a system notification into the observer's personal alert.

        Steps: skip if already processed by this observer, create the personal
        alert under a deterministic id, then add the observer to
        ``processed_by`` on the current server copy. Concurrent observers may
        overwrite each other's ``processed_by`` update; a lost entry only
        causes a later re-conversion, which the deterministic id turns into a
        no-op.

        Returns:
            The personal alert, or None if skipped or not written
        """
        if observer_id in notification.processed_by:
            return None

        alert_id = f"{notification.id}_{observer_id}"
        alert = await self.create_alert(notification.to_candidate(), observer_id, alert_id=alert_id)

        if alert is None:
            return None

        try:
            current = await self._store.get(COLLECTION_SYSTEM_NOTIFICATIONS, notification.id)
            if current is None:
                logger.warning(f"System notification {notification.id} disappeared")
                return alert
            processed_by = set(current.get("processed_by") or [])
            processed_by.add(observer_id)
            await self._store.update(
                COLLECTION_SYSTEM_NOTIFICATIONS,
                notification.id,
                {"processed_by": sorted(processed_by)},
            )
        except StorePermissionError:
            record_store_failure("update")
            raise
        except StoreError as e:
            record_store_failure("update")
            logger.warning(
                f"Failed to mark notification {notification.id} processed by "
                f"{observer_id}: {sanitize_error(e)}"
            )
        return alert


class NotificationObserver:
    """Background task converting system notifications into personal alerts."""

    # Maximum number of consecutive recovery attempts before giving up
    MAX_RECOVERY_ATTEMPTS = 5

    def __init__(
        self,
        observer_id: str,
        dispatcher: AlertDispatcher,
        *,
        recovery_base_delay: float = 1.0,
    ) -> None:
        self.observer_id = observer_id
        self._dispatcher = dispatcher
        self._recovery_base_delay = recovery_base_delay
        self._task: asyncio.Task[None] | None = None
        self._is_running = False
        self._handled: set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def start(self) -> None:
        if self._is_running:
            logger.warning(f"Notification observer {self.observer_id} already started")
            return
        self._is_running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Notification observer {self.observer_id} started")

    async def stop(self) -> None:
        self._is_running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info(f"Notification observer {self.observer_id} stopped")

    async def handle(self, notifications: list[SystemNotification]) -> list[AlertEvent]:
        """Process one emitted result set, returning newly created alerts."""
        created: list[AlertEvent] = []
        for notification in notifications:
            if notification.id in self._handled:
                continue
            if self.observer_id in notification.processed_by:
                self._handled.add(notification.id)
                continue
            try:
                alert = await self._dispatcher.process_system_notification(
                    notification, self.observer_id
                )
            except StorePermissionError as e:
                logger.error(
                    f"Observer {self.observer_id} may not convert notification "
                    f"{notification.id}: {sanitize_error(e)}"
                )
                self._handled.add(notification.id)
                continue
            if alert is not None:
                self._handled.add(notification.id)
                created.append(alert)
        # Ids that fell out of the result window will not be emitted again
        self._handled &= {n.id for n in notifications}
        return created

    async def _run(self) -> None:
        attempts = 0
        while self._is_running:
            try:
                async for notifications in self._dispatcher.watch_system_notifications():
                    attempts = 0
                    await self.handle(notifications)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempts += 1
                if attempts > self.MAX_RECOVERY_ATTEMPTS:
                    logger.error(
                        f"Observer {self.observer_id} gave up after "
                        f"{self.MAX_RECOVERY_ATTEMPTS} attempts: {sanitize_error(e)}"
                    )
                    self._is_running = False
                    return
                backoff = min(self._recovery_base_delay * 2 ** (attempts - 1), 30.0)
                logger.warning(
                    f"Observer {self.observer_id} subscription failed "
                    f"(attempt {attempts}/{self.MAX_RECOVERY_ATTEMPTS}), retrying in "
                    f"{backoff}s: {sanitize_error(e)}"
                )
                await asyncio.sleep(backoff)

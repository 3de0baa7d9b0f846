"""Session lifecycle manager.

Owns the StreamSession records of monitored subjects and keeps at most one
session active per subject. Session creation for a subject is serialized by
a per-subject lock. Across processes, sessions are written create-if-absent
into numbered per-subject slots, so a retried or concurrent start returns
the existing session instead of opening a second one.

Starting and ending a session raises ``stream_started`` / ``stream_ended``
alerts and system notifications. Those side effects are best-effort, except
that a permission failure from the store always reaches the caller.

Usage:
    manager = SessionLifecycleManager(store, dispatcher, scheduler_factory=make_scheduler)
    session = await manager.start_monitoring("resident-1")
    ...
    await manager.stop_monitoring(session.id)
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

from carewatch.core.exceptions import (
    CareWatchError,
    RecordNotFoundError,
    SessionError,
    SessionNotFoundError,
)
from carewatch.core.logging import get_logger, sanitize_error
from carewatch.models.detection import AlertCandidate
from carewatch.models.enums import AlertSeverity, AlertType
from carewatch.models.session import StreamSession
from carewatch.services.alert_dispatcher import AlertDispatcher, utc_now
from carewatch.services.store import COLLECTION_STREAM_SESSIONS, Query, RecordStore

if TYPE_CHECKING:
    from carewatch.services.sampling_scheduler import SamplingScheduler

logger = get_logger(__name__)

STREAM_STARTED_CANDIDATE = AlertCandidate(
    type=AlertType.STREAM_STARTED,
    severity=AlertSeverity.INFO,
    title="Monitoring Started",
    message="Live monitoring has started.",
)

STREAM_ENDED_CANDIDATE = AlertCandidate(
    type=AlertType.STREAM_ENDED,
    severity=AlertSeverity.INFO,
    title="Monitoring Ended",
    message="Live monitoring has ended.",
)

SchedulerFactory = Callable[[str], "SamplingScheduler"]


def build_session_id(subject_id: str, slot: int) -> str:
    return f"{subject_id}_{slot:06d}"


def select_active_session(records: Iterable[Mapping[str, Any]]) -> StreamSession | None:
    """Pick the session observers should see when several are active.

    The lowest id wins so every observer resolves the same session.
    """
    sessions = sorted(
        (StreamSession.model_validate(r) for r in records if r.get("active")),
        key=lambda s: s.id,
    )
    if not sessions:
        return None
    if len(sessions) > 1:
        logger.warning(
            f"{len(sessions)} active sessions for subject {sessions[0].subject_id}; "
            f"presenting {sessions[0].id}"
        )
    return sessions[0]


class SessionLifecycleManager:
    """Starts and ends monitoring sessions and the schedulers that go with them."""

    def __init__(
        self,
        store: RecordStore,
        dispatcher: AlertDispatcher,
        *,
        scheduler_factory: SchedulerFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Record store holding the streamSessions collection
            dispatcher: Dispatcher used for lifecycle alerts
            scheduler_factory: Builds the sampling scheduler for a subject;
                required for start_monitoring/stop_monitoring
            clock: Source of timezone-aware timestamps
        """
        self._store = store
        self._dispatcher = dispatcher
        self._scheduler_factory = scheduler_factory
        self._clock = clock
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._schedulers: dict[str, SamplingScheduler] = {}

    def _active_query(self, subject_id: str) -> Query:
        return Query(
            collection=COLLECTION_STREAM_SESSIONS,
            where={"subject_id": subject_id, "active": True},
            order_by="id",
        )

    def scheduler_for(self, subject_id: str) -> SamplingScheduler | None:
        return self._schedulers.get(subject_id)

    def subject_ids(self) -> list[str]:
        """Subjects that have a scheduler, running or not."""
        return list(self._schedulers)

    async def active_session(self, subject_id: str) -> StreamSession | None:
        """Return the subject's active session, if any."""
        return select_active_session(await self._store.query(self._active_query(subject_id)))

    async def watch_active_session(
        self, subject_id: str
    ) -> AsyncIterator[StreamSession | None]:
        """Stream the subject's active session after every session change."""
        async for records in self._store.subscribe(self._active_query(subject_id)):
            yield select_active_session(records)

    async def get_session(self, session_id: str) -> StreamSession:
        """Fetch a session by id.

        Raises:
            SessionNotFoundError: If no session has that id
        """
        record = await self._store.get(COLLECTION_STREAM_SESSIONS, session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return StreamSession.model_validate(record)

    async def open_session(self, subject_id: str) -> tuple[StreamSession, bool]:
        """Open a session for the subject, or return the one already active.

        Each subject's sessions occupy numbered slots and the next session is
        written create-if-absent under ``{subject_id}_{slot}``. Two processes
        racing to start the same subject compete for one slot, so only one of
        them creates a session; the other returns the winner's.

        Returns:
            The active session and whether this call created it

        Raises:
            StoreError: If the session record cannot be read or written
            StorePermissionError: If the store rejects the session or its alerts
        """
        async with self._locks[subject_id]:
            records = await self._store.query(
                Query(collection=COLLECTION_STREAM_SESSIONS, where={"subject_id": subject_id})
            )
            existing = select_active_session(records)
            if existing is not None:
                logger.info(f"Session {existing.id} already active for {subject_id}")
                return existing, False

            slot = max((int(r.get("slot") or 0) for r in records), default=-1) + 1
            now = self._clock()
            session = StreamSession(
                id=build_session_id(subject_id, slot),
                subject_id=subject_id,
                slot=slot,
                start_time=now,
                active=True,
            )
            created = await self._store.put_if_absent(
                COLLECTION_STREAM_SESSIONS, session.id, session.model_dump(mode="json")
            )
            if not created:
                winner = await self._store.get(COLLECTION_STREAM_SESSIONS, session.id)
                if winner is None:
                    raise SessionError(f"Session slot {session.id} taken but unreadable")
                logger.info(f"Session {session.id} was opened concurrently for {subject_id}")
                return StreamSession.model_validate(winner), False

        logger.info(f"Session {session.id} started for {subject_id}")
        await self._announce(STREAM_STARTED_CANDIDATE, subject_id)
        return session, True

    async def start_session(self, subject_id: str) -> StreamSession:
        """Open a session for the subject, or return the one already active."""
        session, _created = await self.open_session(subject_id)
        return session

    async def end_session(self, session_id: str) -> StreamSession:
        """Mark a session ended. Ending an already ended session is a no-op.

        Raises:
            SessionNotFoundError: If no session has that id
            StoreError: If the update fails
        """
        session = await self.get_session(session_id)
        if not session.active:
            logger.info(f"Session {session_id} already ended")
            return session

        patch = {"end_time": self._clock().isoformat(), "active": False}
        try:
            record = await self._store.update(COLLECTION_STREAM_SESSIONS, session_id, patch)
        except RecordNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        session = StreamSession.model_validate(record)

        logger.info(f"Session {session_id} ended for {session.subject_id}")
        await self._announce(STREAM_ENDED_CANDIDATE, session.subject_id)
        return session

    async def _announce(self, candidate: AlertCandidate, subject_id: str) -> None:
        # Transient failures are swallowed by the dispatcher; permission errors propagate
        await self._dispatcher.create_alert(candidate, subject_id)
        await self._dispatcher.create_system_notification(candidate, subject_id)

    async def start_monitoring(self, subject_id: str) -> StreamSession:
        """Start a session and then the subject's sampling scheduler.

        If the scheduler cannot start, a session opened by this call is ended
        before the error is re-raised. A session that was already active is
        left as it was.

        Raises:
            ModelNotLoadedError: If the pose model cannot be loaded
        """
        if self._scheduler_factory is None:
            raise SessionError("No scheduler factory configured for monitoring")

        session, created = await self.open_session(subject_id)
        scheduler = self._schedulers.get(subject_id)
        if scheduler is None:
            scheduler = self._scheduler_factory(subject_id)
            self._schedulers[subject_id] = scheduler

        try:
            started = await scheduler.start()
        except Exception:
            if created:
                logger.error(f"Scheduler failed to start; ending session {session.id}")
                await self._end_quietly(session.id)
            else:
                logger.error(f"Scheduler failed to start; leaving session {session.id} open")
            raise
        if not started:
            logger.warning(f"Session {session.id} open without sampling (tracking disabled)")
        return session

    async def stop_monitoring(self, session_id: str) -> StreamSession:
        """Stop the subject's scheduler and then end the session.

        Raises:
            SessionNotFoundError: If no session has that id
        """
        session = await self.get_session(session_id)
        scheduler = self._schedulers.get(session.subject_id)
        if scheduler is not None:
            await scheduler.stop()
        return await self.end_session(session_id)

    async def _end_quietly(self, session_id: str) -> None:
        try:
            await self.end_session(session_id)
        except CareWatchError as e:
            logger.error(f"Failed to end session {session_id}: {sanitize_error(e)}")

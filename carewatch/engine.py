"""Engine wiring: build every component from Settings.

Startup order mirrors shutdown in reverse:
    1. Logging
    2. Record store (Redis connection when store_backend="redis")
    3. Notification observer for this process, if an observer id is given

Usage:
    engine = MonitoringEngine(estimator, frame_provider, observer_id="caregiver-1")
    async with engine:
        session = await engine.sessions.start_monitoring("resident-1")
"""

from __future__ import annotations

from carewatch.core.config import Settings, get_settings
from carewatch.core.logging import get_logger, setup_logging
from carewatch.core.redis import RedisClient
from carewatch.models.detection import DetectionConfig
from carewatch.services.alert_dispatcher import (
    AlertDispatcher,
    CandidateCooldown,
    NotificationObserver,
)
from carewatch.services.detection_state import DebouncedStatusFilter
from carewatch.services.motion_metrics import EwmaDisplacementMotion, MotionMetricCalculator
from carewatch.services.pose_source import PoseEstimator, PoseSourceAdapter
from carewatch.services.redis_store import RedisRecordStore
from carewatch.services.sampling_scheduler import FrameProvider, SamplingScheduler
from carewatch.services.session_manager import SessionLifecycleManager
from carewatch.services.store import InMemoryRecordStore, RecordStore

logger = get_logger(__name__)


class MonitoringEngine:
    """Owns the store, dispatcher, session manager and per-subject schedulers."""

    def __init__(
        self,
        estimator: PoseEstimator,
        frame_provider: FrameProvider,
        *,
        settings: Settings | None = None,
        store: RecordStore | None = None,
        observer_id: str | None = None,
        configure_logging: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            estimator: Pose estimator, constructed once and shared by all schedulers
            frame_provider: Returns the latest camera frame
            settings: Settings override (defaults to get_settings())
            store: Pre-built store; otherwise built from settings.store_backend
            observer_id: Id this process converts system notifications for
            configure_logging: Call setup_logging() on start
        """
        self.settings = settings or get_settings()
        self._frame_provider = frame_provider
        self._configure_logging = configure_logging
        self._observer_id = observer_id
        self._redis: RedisClient | None = None
        self._store = store
        self._observer: NotificationObserver | None = None

        self.source = PoseSourceAdapter(
            estimator, timeout_seconds=self.settings.detection_timeout_seconds
        )
        self.config: DetectionConfig = self.settings.default_detection_config()
        self._dispatcher: AlertDispatcher | None = None
        self._sessions: SessionLifecycleManager | None = None

    @property
    def store(self) -> RecordStore:
        if self._store is None:
            raise RuntimeError("Engine not started")
        return self._store

    @property
    def dispatcher(self) -> AlertDispatcher:
        if self._dispatcher is None:
            raise RuntimeError("Engine not started")
        return self._dispatcher

    @property
    def sessions(self) -> SessionLifecycleManager:
        if self._sessions is None:
            raise RuntimeError("Engine not started")
        return self._sessions

    async def _build_store(self) -> RecordStore:
        if self.settings.store_backend == "redis":
            self._redis = RedisClient(self.settings.redis_url)
            await self._redis.connect()
            return RedisRecordStore(self._redis, key_prefix=self.settings.redis_key_prefix)
        return InMemoryRecordStore()

    def make_scheduler(self, subject_id: str) -> SamplingScheduler:
        """Build a scheduler for a subject with settings-driven components."""
        settings = self.settings
        return SamplingScheduler(
            self.source,
            self._frame_provider,
            self.config,
            self.dispatcher,
            subject_id,
            calculator=MotionMetricCalculator(
                EwmaDisplacementMotion(
                    alpha=settings.motion_smoothing_alpha,
                    full_scale=settings.motion_full_scale,
                )
            ),
            status_filter=DebouncedStatusFilter(settings.status_debounce_ticks),
            cooldown=CandidateCooldown(settings.alert_cooldown_seconds),
            history_size=settings.motion_history_size,
        )

    async def start(self) -> None:
        if self._configure_logging:
            setup_logging()
        if self._store is None:
            self._store = await self._build_store()
        self._dispatcher = AlertDispatcher(
            self._store, history_limit=self.settings.alert_history_limit
        )
        self._sessions = SessionLifecycleManager(
            self._store, self._dispatcher, scheduler_factory=self.make_scheduler
        )
        if self._observer_id is not None:
            self._observer = NotificationObserver(self._observer_id, self._dispatcher)
            await self._observer.start()
        logger.info(
            f"{self.settings.app_name} {self.settings.app_version} started "
            f"(store={self.settings.store_backend})"
        )

    async def stop(self) -> None:
        if self._observer is not None:
            await self._observer.stop()
            self._observer = None
        if self._sessions is not None:
            for subject_id in list(self._sessions.subject_ids()):
                scheduler = self._sessions.scheduler_for(subject_id)
                if scheduler is not None:
                    await scheduler.stop()
        if self._redis is not None:
            await self._redis.disconnect()
            self._redis = None
        logger.info("Monitoring engine stopped")

    async def __aenter__(self) -> MonitoringEngine:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.stop()

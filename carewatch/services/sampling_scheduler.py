"""Sampling scheduler driving periodic detection ticks.

One tick: grab the latest frame, run pose detection, compute a motion sample,
classify it, and hand any alert candidates to the dispatcher.

Lifecycle:
    Idle --start()--> Running --stop()--> Idle

    start() loads the pose model first; a load failure propagates and the
    scheduler stays Idle. With motion tracking disabled start() is a no-op.

Concurrency:
    A single timer loop launches ticks as tasks so the cadence does not drift
    with detection latency. At most one tick is in flight at any time; a timer
    firing while one is outstanding is skipped. Each tick captures the
    generation counter at launch, and stop() bumps it, so a detection result
    that arrives after stop() is discarded without touching status or alerts.

Errors never leave a tick: detection unavailability skips it, store and
other failures are logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from carewatch.core.exceptions import DetectionUnavailableError, StorePermissionError
from carewatch.core.logging import get_logger, sanitize_error, set_subject_id
from carewatch.core.metrics import (
    observe_detection_duration,
    record_tick,
    set_detection_status,
)
from carewatch.models.detection import DetectionConfig
from carewatch.models.enums import DetectionStatus, SchedulerState
from carewatch.models.motion import MotionSample
from carewatch.services.alert_dispatcher import AlertDispatcher, CandidateCooldown
from carewatch.services.detection_state import (
    DebouncedStatusFilter,
    DetectionResult,
    classify,
)
from carewatch.services.motion_metrics import MotionMetricCalculator
from carewatch.services.pose_source import PoseSourceAdapter

logger = get_logger(__name__)

DEFAULT_HISTORY_SIZE = 20

FrameProvider = Callable[[], Any]


class SamplingScheduler:
    """Periodic detection loop for one monitored subject."""

    def __init__(
        self,
        source: PoseSourceAdapter,
        frame_provider: FrameProvider,
        config: DetectionConfig,
        dispatcher: AlertDispatcher,
        subject_id: str,
        *,
        calculator: MotionMetricCalculator | None = None,
        status_filter: DebouncedStatusFilter | None = None,
        cooldown: CandidateCooldown | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        """Initialize the scheduler.

        Args:
            source: Pose source adapter wrapping the injected estimator
            frame_provider: Returns the latest frame (or an awaitable of it),
                None while no frame is ready
            config: Detection config, shared with the operator and re-read
                every tick
            dispatcher: Alert dispatcher receiving candidates
            subject_id: Subject whose alerts this scheduler raises
            calculator: Motion metric calculator (default EWMA displacement)
            status_filter: Debounce filter (default passes every status through)
            cooldown: Candidate cooldown (default disabled)
            history_size: Number of recent motion values kept for display
        """
        self._source = source
        self._frame_provider = frame_provider
        self.config = config
        self._dispatcher = dispatcher
        self.subject_id = subject_id
        self._calculator = calculator or MotionMetricCalculator()
        self._status_filter = status_filter or DebouncedStatusFilter()
        self._cooldown = cooldown or CandidateCooldown()

        self._state = SchedulerState.IDLE
        self._status = DetectionStatus.NORMAL
        self._generation = 0
        self._loop_task: asyncio.Task[None] | None = None
        # Shared across generations so a restart cannot overlap a pre-stop tick
        self._in_flight: asyncio.Task[DetectionResult | None] | None = None
        self._history: deque[float] = deque(maxlen=history_size)
        self._last_sample: MotionSample | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def status(self) -> DetectionStatus:
        """Current published detection status."""
        return self._status

    @property
    def motion_history(self) -> list[float]:
        """Recent normalized motion values, oldest first."""
        return list(self._history)

    @property
    def last_sample(self) -> MotionSample | None:
        return self._last_sample

    @property
    def tick_in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def start(self) -> bool:
        """Start periodic sampling.

        Returns:
            True if the scheduler is running afterwards, False if motion
            tracking is disabled

        Raises:
            ModelNotLoadedError: If the pose model cannot be loaded
        """
        if self.is_running:
            logger.warning(f"Scheduler for {self.subject_id} already running")
            return True
        if not self.config.enable_motion_tracking:
            logger.info(f"Motion tracking disabled; scheduler for {self.subject_id} stays idle")
            return False

        await self._source.ensure_loaded()

        self._generation += 1
        self._calculator.reset()
        self._status_filter.reset()
        self._set_status(DetectionStatus.NORMAL)
        self._state = SchedulerState.RUNNING
        self._loop_task = asyncio.create_task(self._run(self._generation))
        logger.info(
            f"Scheduler for {self.subject_id} started "
            f"(interval={self.config.sampling_interval_ms}ms)"
        )
        return True

    async def stop(self) -> None:
        """Stop sampling; results of ticks started before this call are ignored."""
        if not self.is_running:
            return
        self._generation += 1
        self._state = SchedulerState.IDLE
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info(f"Scheduler for {self.subject_id} stopped")

    async def tick_once(self) -> DetectionResult | None:
        """Run one tick immediately, honouring the in-flight rule.

        Returns:
            The tick's result, or None if skipped, discarded, or not running
        """
        if not self.is_running:
            return None
        task = self._launch_tick(self._generation)
        if task is None:
            return None
        return await task

    async def _run(self, generation: int) -> None:
        while generation == self._generation:
            self._launch_tick(generation)
            # Interval is re-read each cycle so operator changes apply live
            await asyncio.sleep(self.config.sampling_interval_ms / 1000.0)

    def _launch_tick(self, generation: int) -> asyncio.Task[DetectionResult | None] | None:
        if self.tick_in_flight:
            record_tick("skipped_busy")
            logger.debug("Previous detection still in flight; skipping tick")
            return None
        self._in_flight = asyncio.create_task(self._tick(generation))
        return self._in_flight

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.is_running

    def _set_status(self, status: DetectionStatus) -> None:
        if status != self._status:
            logger.info(f"Detection status for {self.subject_id}: {self._status} -> {status}")
        self._status = status
        set_detection_status(str(status))

    async def _tick(self, generation: int) -> DetectionResult | None:
        set_subject_id(self.subject_id)
        try:
            return await self._process_tick(generation)
        except asyncio.CancelledError:
            raise
        except StorePermissionError as e:
            record_tick("error")
            logger.error(f"Alert write rejected for {self.subject_id}: {sanitize_error(e)}")
        except Exception as e:
            record_tick("error")
            logger.error(f"Detection tick failed: {sanitize_error(e)}", exc_info=True)
        return None

    async def _process_tick(self, generation: int) -> DetectionResult | None:
        config = self.config
        if not config.enable_motion_tracking:
            record_tick("disabled")
            return None

        frame = self._frame_provider()
        if inspect.isawaitable(frame):
            frame = await frame

        started = time.perf_counter()
        try:
            pose = await self._source.detect(frame)
        except DetectionUnavailableError as e:
            record_tick("unavailable")
            logger.debug(f"Detection unavailable: {e.message}")
            return None
        observe_detection_duration(time.perf_counter() - started)

        if not self._is_current(generation):
            record_tick("discarded")
            logger.debug("Discarding detection result from a stopped run")
            return None

        sample = self._calculator.compute(pose)
        if sample is None:
            record_tick("skipped")
            return None

        self._last_sample = sample
        self._history.append(sample.normalized_motion_value)

        result = self._status_filter.apply(classify(sample, config))
        self._set_status(result.status)

        for candidate in result.candidates:
            if not self._is_current(generation):
                break
            if not self._cooldown.allow(self.subject_id, candidate.type):
                continue
            await self._dispatcher.create_alert(candidate, self.subject_id)

        record_tick("processed")
        return result

"""Pose source adapter around an injected pose estimator.

The estimator is a capability constructed once per process or session and
passed in by reference; the adapter never creates or caches a global model
handle. Every detection call is bounded by a timeout so a slow or wedged
model cannot hold a tick forever.

Usage:
    from carewatch.services.pose_source import PoseSourceAdapter

    source = PoseSourceAdapter(estimator, timeout_seconds=2.0)
    await source.ensure_loaded()
    pose = await source.detect(frame)   # raises DetectionUnavailableError
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from carewatch.core.exceptions import DetectionUnavailableError, ModelNotLoadedError
from carewatch.core.logging import get_logger, sanitize_error
from carewatch.models.pose import PoseEstimate

logger = get_logger(__name__)


@runtime_checkable
class PoseEstimator(Protocol):
    """External pose estimation model."""

    @property
    def is_loaded(self) -> bool: ...

    async def load(self) -> None: ...

    async def detect(self, frame: Any) -> PoseEstimate | None:
        """Return a pose for the frame, or None if no pose is available."""
        ...


class ArrayPoseEstimator:
    """PoseEstimator for models that return a [17, 3] keypoint array.

    ``infer`` is a blocking callable (frame -> array of (x, y, confidence) rows
    or None) and runs in a worker thread. ``loader`` builds whatever ``infer``
    needs and also runs in a worker thread. Frame size is taken from the
    frame's ``shape`` (height, width, ...) as numpy images carry it.
    """

    def __init__(
        self,
        infer: Callable[[Any], Any],
        loader: Callable[[], None] | None = None,
    ) -> None:
        self._infer = infer
        self._loader = loader
        self._loaded = loader is None

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def load(self) -> None:
        if self._loaded:
            return
        if self._loader is not None:
            await asyncio.to_thread(self._loader)
        self._loaded = True

    async def detect(self, frame: Any) -> PoseEstimate | None:
        keypoints = await asyncio.to_thread(self._infer, frame)
        if keypoints is None:
            return None
        height, width = frame.shape[:2]
        return PoseEstimate.from_array(keypoints, frame_width=width, frame_height=height)


class PoseSourceAdapter:
    """Exposes ``detect(frame) -> PoseEstimate`` with timeout and error mapping."""

    def __init__(self, estimator: PoseEstimator, timeout_seconds: float | None = 2.0) -> None:
        """Initialize the adapter.

        Args:
            estimator: Injected pose estimator capability
            timeout_seconds: Upper bound for one detection call (None disables)
        """
        self._estimator = estimator
        self._timeout = timeout_seconds

    @property
    def is_loaded(self) -> bool:
        return bool(self._estimator.is_loaded)

    async def ensure_loaded(self) -> None:
        """Load the model if needed.

        Raises:
            ModelNotLoadedError: If loading fails or the model stays unloaded
        """
        if self._estimator.is_loaded:
            return
        logger.info("Loading pose estimation model")
        try:
            await self._estimator.load()
        except Exception as e:
            logger.error(f"Pose model failed to load: {sanitize_error(e)}")
            raise ModelNotLoadedError(f"Pose model failed to load: {sanitize_error(e)}") from e
        if not self._estimator.is_loaded:
            raise ModelNotLoadedError()
        logger.info("Pose estimation model loaded")

    async def detect(self, frame: Any) -> PoseEstimate:
        """Run pose detection on a frame.

        Raises:
            DetectionUnavailableError: Frame missing, model not loaded, no pose,
                timeout, or any inference failure
        """
        if frame is None:
            raise DetectionUnavailableError("Frame not ready")
        if not self._estimator.is_loaded:
            raise DetectionUnavailableError("Pose model not loaded")
        try:
            pose = await asyncio.wait_for(self._estimator.detect(frame), timeout=self._timeout)
        except TimeoutError as e:
            raise DetectionUnavailableError(
                f"Pose detection timed out after {self._timeout}s"
            ) from e
        except DetectionUnavailableError:
            raise
        except Exception as e:
            raise DetectionUnavailableError(
                f"Pose detection failed: {sanitize_error(e)}"
            ) from e
        if pose is None:
            raise DetectionUnavailableError("No pose in frame")
        return pose

"""Unit tests for the pose source adapter."""

import numpy as np
import pytest

from carewatch.core.exceptions import DetectionUnavailableError, ModelNotLoadedError
from carewatch.services.pose_source import ArrayPoseEstimator, PoseEstimator, PoseSourceAdapter
from carewatch.tests.factories import FakePoseEstimator, GatedPoseEstimator, make_pose


class TestPoseSourceAdapter:
    """Tests for detect() error mapping and model loading."""

    @pytest.mark.asyncio
    async def test_detect_returns_pose(self):
        pose = make_pose()
        source = PoseSourceAdapter(FakePoseEstimator([pose]))
        assert await source.detect(object()) == pose

    @pytest.mark.asyncio
    async def test_missing_frame_is_unavailable(self):
        source = PoseSourceAdapter(FakePoseEstimator())
        with pytest.raises(DetectionUnavailableError, match="Frame not ready"):
            await source.detect(None)

    @pytest.mark.asyncio
    async def test_unloaded_model_is_unavailable(self):
        estimator = FakePoseEstimator(loaded=False)
        source = PoseSourceAdapter(estimator)
        with pytest.raises(DetectionUnavailableError, match="not loaded"):
            await source.detect(object())
        assert estimator.detect_calls == 0

    @pytest.mark.asyncio
    async def test_no_pose_is_unavailable(self):
        source = PoseSourceAdapter(FakePoseEstimator([None]))
        with pytest.raises(DetectionUnavailableError, match="No pose"):
            await source.detect(object())

    @pytest.mark.asyncio
    async def test_inference_error_is_unavailable(self):
        source = PoseSourceAdapter(FakePoseEstimator(detect_error=RuntimeError("CUDA OOM")))
        with pytest.raises(DetectionUnavailableError, match="failed") as exc_info:
            await source.detect(object())
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        estimator = GatedPoseEstimator()
        source = PoseSourceAdapter(estimator, timeout_seconds=0.01)
        with pytest.raises(DetectionUnavailableError, match="timed out"):
            await source.detect(object())

    @pytest.mark.asyncio
    async def test_ensure_loaded_loads_once(self):
        estimator = FakePoseEstimator(loaded=False)
        source = PoseSourceAdapter(estimator)
        await source.ensure_loaded()
        await source.ensure_loaded()
        assert source.is_loaded
        assert estimator.load_calls == 1

    @pytest.mark.asyncio
    async def test_ensure_loaded_failure(self):
        estimator = FakePoseEstimator(loaded=False, load_error=OSError("weights missing"))
        source = PoseSourceAdapter(estimator)
        with pytest.raises(ModelNotLoadedError):
            await source.ensure_loaded()
        assert not source.is_loaded


class TestArrayPoseEstimator:
    def test_satisfies_protocol(self):
        assert isinstance(ArrayPoseEstimator(lambda frame: None), PoseEstimator)

    @pytest.mark.asyncio
    async def test_detect_uses_frame_shape(self):
        keypoints = make_pose().to_array()
        estimator = ArrayPoseEstimator(lambda frame: keypoints)
        frame = np.zeros((480, 640, 3), dtype=np.uint8)

        pose = await estimator.detect(frame)

        assert pose.frame_height == 480
        assert pose.frame_width == 640
        assert pose.keypoint("nose").x == 320

    @pytest.mark.asyncio
    async def test_detect_none(self):
        estimator = ArrayPoseEstimator(lambda frame: None)
        assert await estimator.detect(np.zeros((10, 10, 3))) is None

    @pytest.mark.asyncio
    async def test_loader_runs_once(self):
        calls = []
        estimator = ArrayPoseEstimator(lambda frame: None, loader=lambda: calls.append(1))
        assert not estimator.is_loaded
        await estimator.load()
        await estimator.load()
        assert estimator.is_loaded
        assert calls == [1]

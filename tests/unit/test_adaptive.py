"""
Unit tests for the adaptive quality controller.
"""

import pytest

from accelstream.config import AdaptiveConfig
from accelstream.streaming.adaptive import AdaptiveQualityController
from accelstream.streaming.quality import QualityClass, QualityTier
from tests.fixtures import SampleFactory


@pytest.fixture
def controller() -> AdaptiveQualityController:
    return AdaptiveQualityController(AdaptiveConfig())


@pytest.mark.unit
class TestInitialTier:
    """Tests for the starting tier of AUTO sessions."""

    def test_no_sample_uses_default(self, controller):
        assert controller.initial_tier(None) == QualityTier.HD

    @pytest.mark.parametrize(
        "quality,expected",
        [
            (QualityClass.EXCELLENT, QualityTier.UHD_4K),
            (QualityClass.GOOD, QualityTier.FHD),
            (QualityClass.FAIR, QualityTier.HD),
            (QualityClass.POOR, QualityTier.SD),
        ],
    )
    def test_highest_sustainable_tier(self, controller, quality, expected):
        assert controller.initial_tier(SampleFactory.create(quality, 0.0)) == expected


@pytest.mark.unit
class TestHysteresis:
    """Tests for downgrade and upgrade behaviour."""

    @pytest.mark.asyncio
    async def test_two_poor_samples_downgrade_one_tier(self, controller):
        """FHD drops to HD after two consecutive poor samples."""
        changes = []
        controller.register("s1", QualityTier.FHD, lambda sid, old, new: changes.append((old, new)))

        await controller.on_sample(SampleFactory.create(QualityClass.POOR, 0.0))
        assert controller.recommendation("s1") == QualityTier.FHD

        await controller.on_sample(SampleFactory.create(QualityClass.POOR, 3.0))

        assert controller.recommendation("s1") == QualityTier.HD
        assert changes == [(QualityTier.FHD, QualityTier.HD)]

    @pytest.mark.asyncio
    async def test_single_bad_sample_is_ignored(self, controller):
        controller.register("s1", QualityTier.FHD)

        for quality, t in [
            (QualityClass.POOR, 0.0),
            (QualityClass.GOOD, 3.0),
            (QualityClass.POOR, 6.0),
            (QualityClass.GOOD, 9.0),
        ]:
            await controller.on_sample(SampleFactory.create(quality, t))

        assert controller.recommendation("s1") == QualityTier.FHD

    @pytest.mark.asyncio
    async def test_downgrade_clears_window(self, controller):
        """Each downgrade needs its own run of bad samples."""
        controller.register("s1", QualityTier.FHD)

        for sample in SampleFactory.series(QualityClass.POOR, 0.0, 3):
            await controller.on_sample(sample)

        assert controller.recommendation("s1") == QualityTier.HD

        await controller.on_sample(SampleFactory.create(QualityClass.POOR, 9.0))

        assert controller.recommendation("s1") == QualityTier.SD

    @pytest.mark.asyncio
    async def test_upgrade_after_dwell_exactly_once(self, controller):
        """HD rises to FHD once after 30 seconds of excellent samples."""
        changes = []
        controller.register("s1", QualityTier.HD, lambda sid, old, new: changes.append((old, new)))

        for sample in SampleFactory.series(QualityClass.EXCELLENT, 0.0, 12, interval=3.0):
            await controller.on_sample(sample)

        assert controller.recommendation("s1") == QualityTier.FHD
        assert changes == [(QualityTier.HD, QualityTier.FHD)]

    @pytest.mark.asyncio
    async def test_no_upgrade_before_dwell(self, controller):
        controller.register("s1", QualityTier.HD)

        for sample in SampleFactory.series(QualityClass.EXCELLENT, 0.0, 10, interval=3.0):
            await controller.on_sample(sample)

        assert controller.recommendation("s1") == QualityTier.HD

    @pytest.mark.asyncio
    async def test_interrupted_dwell_restarts(self, controller):
        """A sample below the next tier's requirement resets the dwell timer."""
        controller.register("s1", QualityTier.HD)

        samples = SampleFactory.series(QualityClass.GOOD, 0.0, 6, interval=5.0)
        samples.append(SampleFactory.create(QualityClass.FAIR, 30.0))
        samples.extend(SampleFactory.series(QualityClass.GOOD, 33.0, 3, interval=5.0))
        for sample in samples:
            await controller.on_sample(sample)

        assert controller.recommendation("s1") == QualityTier.HD

    @pytest.mark.asyncio
    async def test_sessions_adapt_independently(self, controller):
        controller.register("a", QualityTier.FHD)
        controller.register("b", QualityTier.SD)

        for sample in SampleFactory.series(QualityClass.POOR, 0.0, 2):
            await controller.on_sample(sample)

        assert controller.recommendation("a") == QualityTier.HD
        assert controller.recommendation("b") == QualityTier.SD

    @pytest.mark.asyncio
    async def test_listener_error_is_contained(self, controller):
        def broken(sid, old, new):
            raise RuntimeError("listener bug")

        controller.register("s1", QualityTier.FHD, broken)

        for sample in SampleFactory.series(QualityClass.POOR, 0.0, 2):
            await controller.on_sample(sample)

        assert controller.recommendation("s1") == QualityTier.HD

    def test_unregister(self, controller):
        controller.register("s1", QualityTier.HD)
        controller.unregister("s1")

        assert controller.recommendation("s1") is None
        assert controller.get_stats()["sessions"] == {}

"""Tests for classification.py."""

from __future__ import annotations

import random

import pytest

from media_pipeline_service.classification import (
    ClassificationError,
    RandomClassificationPolicy,
)
from media_pipeline_service.constants.asset_status import ClassificationStatus


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"video")
    return str(path)


class TestRandomClassificationPolicy:
    @pytest.mark.asyncio
    async def test_always_flags(self, source):
        policy = RandomClassificationPolicy(flag_probability=1.0)
        verdict = await policy.classify(source)
        assert verdict.classification == ClassificationStatus.FLAGGED

    @pytest.mark.asyncio
    async def test_never_flags(self, source):
        policy = RandomClassificationPolicy(flag_probability=0.0)
        verdict = await policy.classify(source)
        assert verdict.classification == ClassificationStatus.SAFE

    @pytest.mark.asyncio
    async def test_confidence_range_and_flag_rate(self, source):
        policy = RandomClassificationPolicy(rng=random.Random(1234))
        verdicts = [await policy.classify(source) for _ in range(2000)]

        assert all(0.7 <= v.confidence <= 1.0 for v in verdicts)
        flagged = sum(v.classification == ClassificationStatus.FLAGGED for v in verdicts)
        assert 0.15 < flagged / len(verdicts) < 0.25

    @pytest.mark.asyncio
    async def test_deterministic_with_seed(self, source):
        first = RandomClassificationPolicy(rng=random.Random(7))
        second = RandomClassificationPolicy(rng=random.Random(7))
        assert await first.classify(source) == await second.classify(source)

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        policy = RandomClassificationPolicy()
        with pytest.raises(ClassificationError):
            await policy.classify(str(tmp_path / "gone.mp4"))

    def test_invalid_probability(self):
        with pytest.raises(ValueError):
            RandomClassificationPolicy(flag_probability=1.5)

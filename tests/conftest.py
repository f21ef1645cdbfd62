"""Shared fixtures: in-memory store, notifier, stand-in probe/policy and sample media files."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from media_pipeline_service.classification import ClassificationPolicy
from media_pipeline_service.constants.asset_status import ClassificationStatus
from media_pipeline_service.media_processor import CopyFinalizer
from media_pipeline_service.models import Asset, ClassificationVerdict, MediaMetadata
from media_pipeline_service.notifier import ProgressNotifier
from media_pipeline_service.orchestrator import PipelineOrchestrator
from media_pipeline_service.store import InMemoryAssetStore

SAMPLE_SIZE = 1000


def sample_bytes(size: int = SAMPLE_SIZE) -> bytes:
    return bytes(i % 251 for i in range(size))


class FakeProbe:
    def __init__(self, metadata=None, error=None, delay=0.0):
        self.metadata = metadata or MediaMetadata(
            duration=12.5,
            width=1920,
            height=1080,
            codec="h264",
            bitrate=800000,
            hasAudio=True,
        )
        self.error = error
        self.delay = delay
        self.calls = []

    async def __call__(self, path: str) -> MediaMetadata:
        self.calls.append(path)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.metadata


class PathPolicy(ClassificationPolicy):
    """Flags any file whose path contains 'flag'; can be told to fail or stall."""

    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay
        self.calls = []

    async def classify(self, path: str) -> ClassificationVerdict:
        self.calls.append(path)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        status = (
            ClassificationStatus.FLAGGED
            if "flag" in os.path.basename(path)
            else ClassificationStatus.SAFE
        )
        return ClassificationVerdict(classification=status, confidence=0.9)


@pytest.fixture
def upload_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def processed_dir(tmp_path: Path) -> Path:
    return tmp_path / "processed"


@pytest.fixture
def make_asset(upload_dir: Path):
    """Factory writing a sample source file and returning an uploading Asset."""

    def _make(asset_id="a1", owner_id="u1", size=SAMPLE_SIZE, **overrides):
        source = upload_dir / f"{asset_id}.mp4"
        source.write_bytes(sample_bytes(size))
        fields = dict(
            id=asset_id,
            ownerId=owner_id,
            organizationId="org1",
            title=f"Video {asset_id}",
            filename=f"{asset_id}.mp4",
            originalFilename=f"original-{asset_id}.mp4",
            filePath=str(source),
            fileSize=size,
            mimeType="video/mp4",
        )
        fields.update(overrides)
        return Asset(**fields)

    return _make


@pytest.fixture
def store() -> InMemoryAssetStore:
    return InMemoryAssetStore()


@pytest.fixture
def notifier() -> ProgressNotifier:
    return ProgressNotifier(max_queue=100)


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def policy() -> PathPolicy:
    return PathPolicy()


@pytest.fixture
def orchestrator(store, notifier, probe, policy, processed_dir) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        store=store,
        notifier=notifier,
        policy=policy,
        finalizer=CopyFinalizer(str(processed_dir)),
        probe=probe,
    )


def drain(subscriber) -> list[dict]:
    """Pull every queued event off a subscriber without waiting."""
    events = []
    while not subscriber.queue.empty():
        events.append(subscriber.queue.get_nowait())
    return events


import asyncio
import logging
import os
from typing import Awaitable, Callable, Dict, Optional, Set

from media_pipeline_service.classification import (
    ClassificationError,
    ClassificationPolicy,
)
from media_pipeline_service.constants.asset_status import (
    TERMINAL_STATUSES,
    AssetStatus,
    Checkpoint,
)
from media_pipeline_service.media_processor import Finalizer, ProbeError, probe_media
from media_pipeline_service.models import Asset, MediaMetadata
from media_pipeline_service.notifier import (
    COMPLETE_EVENT,
    ERROR_EVENT,
    PROGRESS_EVENT,
    ProgressNotifier,
)
from media_pipeline_service.store import AssetStore

logger = logging.getLogger(__name__)

Probe = Callable[[str], Awaitable[MediaMetadata]]


def artifact_name(asset: Asset) -> str:
    """Published file name. Filenames are not unique across assets, ids are."""
    _, ext = os.path.splitext(asset.filename)
    return f"processed-{os.path.basename(asset.id)}{ext}"


class PipelineOrchestrator:
    """Drives an asset from intake to a terminal status.

    Each checkpoint is persisted before observers hear about it and before the
    next step starts. Runs are detached tasks; their outcome is only visible on
    the stored record and through the notifier.
    """

    def __init__(
        self,
        store: AssetStore,
        notifier: ProgressNotifier,
        policy: ClassificationPolicy,
        finalizer: Finalizer,
        probe: Probe = probe_media,
        probe_timeout: Optional[float] = None,
        classify_timeout: Optional[float] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.policy = policy
        self.finalizer = finalizer
        self.probe = probe
        self.probe_timeout = probe_timeout
        self.classify_timeout = classify_timeout
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> Set[str]:
        return set(self._tasks)

    def start(self, asset_id: str, owner_id: str) -> asyncio.Task:
        """Schedule a run without waiting for it."""
        existing = self._tasks.get(asset_id)
        if existing is not None and not existing.done():
            logger.warning("Asset %s already has a run in progress", asset_id)
            return existing

        task = asyncio.create_task(
            self.run(asset_id, owner_id), name=f"pipeline-{asset_id}"
        )
        self._tasks[asset_id] = task
        task.add_done_callback(lambda done: self._forget(asset_id, done))
        return task

    def _forget(self, asset_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(asset_id) is task:
            del self._tasks[asset_id]

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def run(self, asset_id: str, owner_id: str) -> None:
        logger.info("Starting pipeline for asset %s (owner %s)", asset_id, owner_id)

        try:
            asset = await self.store.get(asset_id)
        except Exception:
            logger.exception("Could not load asset %s, aborting run", asset_id)
            return
        if asset is None:
            logger.error("Asset %s not found, aborting run", asset_id)
            return
        if asset.ownerId != owner_id:
            logger.error(
                "Asset %s belongs to %s, not %s; aborting run",
                asset_id,
                asset.ownerId,
                owner_id,
            )
            return

        artifact_path = None
        try:
            # start
            asset.transition_to(AssetStatus.PROCESSING)
            asset = await self._commit(asset, Checkpoint.START, owner_id, "processing")

            # metadata
            await self._extract_metadata(asset)
            asset = await self._commit(
                asset, Checkpoint.METADATA, owner_id, "processing"
            )

            # classify
            asset = await self._commit(
                asset, Checkpoint.CLASSIFY_BEGIN, owner_id, "analyzing"
            )
            verdict = await self._classify(asset)
            asset.apply_classification(verdict)
            asset = await self._commit(
                asset, Checkpoint.CLASSIFY_END, owner_id, "processing"
            )

            # finalize
            artifact_path = await self.finalizer.finalize(
                asset.filePath, artifact_name(asset)
            )
            asset = await self._commit(
                asset, Checkpoint.FINALIZE_BEGIN, owner_id, "finalizing"
            )

            # done: the artifact location only becomes visible with the completed status
            asset.processedFilePath = artifact_path
            asset.transition_to(AssetStatus.COMPLETED)
            asset.advance_progress(Checkpoint.DONE)
            asset = await self.store.save(asset)
            self.notifier.notify(
                COMPLETE_EVENT,
                owner_id,
                asset_id,
                {
                    "assetId": asset_id,
                    "progress": asset.progress,
                    "status": asset.status.value,
                    "classification": asset.classificationStatus.value,
                },
            )
            logger.info(
                "Asset %s processed successfully (%s)",
                asset_id,
                asset.classificationStatus.value,
            )
        except Exception as e:
            logger.exception("Error processing asset %s", asset_id)
            await self._fail(
                asset_id, owner_id, str(e) or type(e).__name__, artifact_path
            )

    async def _commit(
        self, asset: Asset, checkpoint: Checkpoint, owner_id: str, status_label: str
    ) -> Asset:
        asset.advance_progress(checkpoint)
        asset = await self.store.save(asset)
        logger.info(
            "Asset %s reached checkpoint %s (%s%%)",
            asset.id,
            checkpoint.value,
            asset.progress,
        )
        self.notifier.notify(
            PROGRESS_EVENT,
            owner_id,
            asset.id,
            {"assetId": asset.id, "progress": asset.progress, "status": status_label},
        )
        return asset

    async def _extract_metadata(self, asset: Asset) -> None:
        """Merge probe results into the asset. Probe failures are not fatal."""
        try:
            metadata = await asyncio.wait_for(
                self.probe(asset.filePath), timeout=self.probe_timeout
            )
        except ProbeError as e:
            logger.warning("Metadata extraction failed for asset %s: %s", asset.id, e)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Metadata extraction timed out for asset %s after %ss",
                asset.id,
                self.probe_timeout,
            )
            return
        asset.apply_metadata(metadata)

    async def _classify(self, asset: Asset):
        try:
            return await asyncio.wait_for(
                self.policy.classify(asset.filePath), timeout=self.classify_timeout
            )
        except asyncio.TimeoutError:
            raise ClassificationError(
                f"Classification timed out after {self.classify_timeout}s"
            )

    async def _fail(
        self,
        asset_id: str,
        owner_id: str,
        message: str,
        artifact_path: Optional[str],
    ) -> None:
        if artifact_path and os.path.exists(artifact_path):
            try:
                os.remove(artifact_path)
                logger.info("Removed orphaned artifact %s", artifact_path)
            except OSError as e:
                logger.warning("Could not remove artifact %s: %s", artifact_path, e)

        try:
            asset = await self.store.get(asset_id)
        except Exception:
            logger.exception("Could not reload asset %s to mark it failed", asset_id)
            return
        if asset is None:
            logger.error(
                "Asset %s disappeared before it could be marked failed", asset_id
            )
            return
        if asset.status in TERMINAL_STATUSES:
            logger.warning(
                "Asset %s is already %s, leaving it unchanged",
                asset_id,
                asset.status.value,
            )
            return

        asset.transition_to(AssetStatus.FAILED)
        asset.errorMessage = message
        try:
            await self.store.save(asset)
        except Exception:
            logger.exception("Could not persist failed status for asset %s", asset_id)

        self.notifier.notify(
            ERROR_EVENT, owner_id, asset_id, {"assetId": asset_id, "message": message}
        )

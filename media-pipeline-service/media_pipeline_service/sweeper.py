import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from media_pipeline_service.constants.asset_status import AssetStatus
from media_pipeline_service.models import utcnow
from media_pipeline_service.notifier import ERROR_EVENT, ProgressNotifier
from media_pipeline_service.store import AssetStore

logger = logging.getLogger(__name__)


async def sweep_stale_runs(
    store: AssetStore,
    notifier: ProgressNotifier,
    threshold_seconds: float,
    now: Optional[datetime] = None,
    exclude: Iterable[str] = (),
) -> List[str]:
    """Fail `processing` assets whose run stopped making progress.

    A run that died with its process leaves the record at its last checkpoint.
    Records not updated within ``threshold_seconds`` are moved to ``failed``.
    Nothing is resumed.

    Args:
        store: Asset record store
        notifier: Notifier used to tell owners about the failure
        threshold_seconds: Age of the last update after which a run is considered stuck
        now: Reference time, defaults to the current UTC time
        exclude: Asset ids with a live run in this process

    Returns:
        The ids of the assets that were failed
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=threshold_seconds)
    skip = set(exclude)
    failed = []

    for asset in await store.list_by_status(AssetStatus.PROCESSING):
        if asset.id in skip:
            continue
        updated = asset.updatedAt
        if updated is not None and updated.tzinfo is None:
            updated = updated.replace(tzinfo=timezone.utc)
        if updated is not None and updated > cutoff:
            continue

        checkpoint = asset.checkpoint.value if asset.checkpoint else "none"
        message = f"Processing interrupted at checkpoint {checkpoint}"
        logger.warning("Asset %s is stuck (%s). Failing it.", asset.id, message)

        asset.transition_to(AssetStatus.FAILED)
        asset.errorMessage = message
        await store.save(asset)
        notifier.notify(
            ERROR_EVENT,
            asset.ownerId,
            asset.id,
            {"assetId": asset.id, "message": message},
        )
        failed.append(asset.id)

    return failed


async def stale_run_sweeper(
    store: AssetStore,
    notifier: ProgressNotifier,
    threshold_seconds: float,
    interval_seconds: float,
    in_flight: Callable[[], Iterable[str]] = lambda: (),
) -> None:
    while True:
        try:
            failed = await sweep_stale_runs(
                store, notifier, threshold_seconds, exclude=in_flight()
            )
            if failed:
                logger.info("Sweeper failed %d stuck asset(s): %s", len(failed), failed)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error in stale run sweeper: %s", e)
        await asyncio.sleep(interval_seconds)

import logging

from aiohttp import web

from media_pipeline_service.classification import RandomClassificationPolicy
from media_pipeline_service.config import config
from media_pipeline_service.media_processor import build_finalizer, probe_media
from media_pipeline_service.notifier import ProgressNotifier
from media_pipeline_service.orchestrator import PipelineOrchestrator
from media_pipeline_service.store import build_store
from media_pipeline_service.web import create_app

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_app() -> web.Application:
    store = build_store(config.ASSET_STORE)
    notifier = ProgressNotifier(max_queue=config.NOTIFIER_QUEUE_SIZE)
    orchestrator = PipelineOrchestrator(
        store=store,
        notifier=notifier,
        policy=RandomClassificationPolicy(
            flag_probability=config.CLASSIFY_FLAG_PROBABILITY,
            simulated_delay=config.CLASSIFY_SIMULATED_DELAY_SECONDS,
        ),
        finalizer=build_finalizer(config.FINALIZER, config.PROCESSED_DIR),
        probe=probe_media,
        probe_timeout=config.timeout_or_none(config.PROBE_TIMEOUT_SECONDS),
        classify_timeout=config.timeout_or_none(config.CLASSIFY_TIMEOUT_SECONDS),
    )
    return create_app(
        store,
        notifier,
        orchestrator,
        chunk_size=config.STREAM_CHUNK_SIZE_BYTES,
        sweep_threshold_seconds=config.STUCK_RUN_THRESHOLD_SECONDS,
        sweep_interval_seconds=config.SWEEP_INTERVAL_SECONDS,
    )


def main():
    configure_logging()
    logger.info(
        "Starting media pipeline service on %s:%s (store=%s, finalizer=%s)",
        config.HOST,
        config.PORT,
        config.ASSET_STORE,
        config.FINALIZER,
    )
    logger.info("Processed artifacts directory: %s", config.PROCESSED_DIR)
    web.run_app(build_app(), host=config.HOST, port=config.PORT, print=None)


if __name__ == "__main__":
    main()

import asyncio
import logging
import uuid
from typing import Callable, Optional

from aiohttp import WSMsgType, web
from pydantic import ValidationError

from media_pipeline_service.constants.asset_status import AssetStatus
from media_pipeline_service.models import Asset
from media_pipeline_service.notifier import ProgressNotifier, Subscriber
from media_pipeline_service.orchestrator import PipelineOrchestrator
from media_pipeline_service.store import AssetStore
from media_pipeline_service.streamer import (
    NotFoundError,
    StreamError,
    iter_file_range,
    plan_stream,
)
from media_pipeline_service.sweeper import stale_run_sweeper

logger = logging.getLogger(__name__)

Identify = Callable[[web.Request], Optional[str]]

STORE_KEY = web.AppKey("store", object)
NOTIFIER_KEY = web.AppKey("notifier", ProgressNotifier)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", PipelineOrchestrator)
IDENTIFY_KEY = web.AppKey("identify", object)
CHUNK_SIZE_KEY = web.AppKey("chunk_size", int)

_PIPELINE_OWNED_FIELDS = (
    "processedFilePath",
    "duration",
    "metadata",
    "status",
    "classificationStatus",
    "classificationConfidence",
    "progress",
    "checkpoint",
    "errorMessage",
    "createdAt",
    "updatedAt",
)


def default_identify(request: web.Request) -> Optional[str]:
    """Owning identity as established by the upstream authentication layer."""
    return request.headers.get("X-User-Id") or request.query.get("userId")


async def health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def register_asset(request: web.Request) -> web.Response:
    """Record an asset whose bytes the intake layer has already stored."""
    store: AssetStore = request.app[STORE_KEY]

    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"message": "Invalid JSON body"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"message": "Invalid JSON body"}, status=400)

    body.setdefault("id", uuid.uuid4().hex)
    body.setdefault("title", body.get("originalFilename"))
    # Lifecycle fields always start fresh
    for key in _PIPELINE_OWNED_FIELDS:
        body.pop(key, None)

    try:
        asset = Asset(**body)
    except ValidationError as e:
        return web.json_response(
            {
                "message": "Invalid asset",
                "errors": [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ],
            },
            status=400,
        )

    try:
        created = await store.create(asset)
    except ValueError as e:
        return web.json_response({"message": str(e)}, status=409)

    return web.json_response(
        {
            "id": created.id,
            "title": created.title,
            "status": created.status.value,
            "progress": created.progress,
        },
        status=201,
    )


async def process_asset(request: web.Request) -> web.Response:
    asset_id = request.match_info["asset_id"]
    store: AssetStore = request.app[STORE_KEY]

    try:
        body = await request.json()
    except ValueError:
        body = {}
    owner_id = body.get("ownerId") if isinstance(body, dict) else None
    if not owner_id:
        return web.json_response({"message": "ownerId is required"}, status=400)

    asset = await store.get(asset_id)
    if asset is None:
        return web.json_response({"message": "Video not found"}, status=404)
    if asset.ownerId != owner_id:
        logger.warning(
            "Rejected processing of asset %s for %s: owned by %s",
            asset_id,
            owner_id,
            asset.ownerId,
        )
        return web.json_response(
            {"message": "Not authorized for this video"}, status=403
        )
    if asset.status != AssetStatus.UPLOADING:
        return web.json_response(
            {"message": f"Video is already {asset.status.value}"}, status=409
        )

    request.app[ORCHESTRATOR_KEY].start(asset_id, owner_id)
    return web.json_response({"assetId": asset_id, "status": "accepted"}, status=202)


async def stream_asset(request: web.Request) -> web.StreamResponse:
    asset_id = request.match_info["asset_id"]
    store: AssetStore = request.app[STORE_KEY]

    asset = await store.get(asset_id)
    if asset is None:
        return web.json_response({"message": "Video not found"}, status=404)

    try:
        plan = plan_stream(asset, request.headers.get("Range"))
    except StreamError as e:
        return web.json_response(
            {"message": e.message}, status=e.status_code, headers=e.headers
        )

    response = web.StreamResponse(status=plan.status, headers=plan.headers)
    await response.prepare(request)
    try:
        async for chunk in iter_file_range(
            plan.path, plan.start, plan.length, request.app[CHUNK_SIZE_KEY]
        ):
            await response.write(chunk)
    except NotFoundError as e:
        # Headers are already out; the short body tells the client it failed.
        logger.error("Streaming asset %s aborted: %s", asset_id, e.message)
        return response
    await response.write_eof()
    return response


async def _pump_events(ws: web.WebSocketResponse, subscriber: Subscriber) -> None:
    while True:
        event = await subscriber.next_event()
        try:
            await ws.send_json(event)
        except ConnectionResetError:
            return


async def progress_socket(request: web.Request) -> web.StreamResponse:
    owner_id = request.app[IDENTIFY_KEY](request)
    if not owner_id:
        return web.json_response({"message": "Authentication error"}, status=401)

    notifier: ProgressNotifier = request.app[NOTIFIER_KEY]
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    subscriber = notifier.connect(owner_id)
    sender = asyncio.create_task(_pump_events(ws, subscriber))

    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning(
                    "WebSocket for observer %s failed: %s", subscriber.id, ws.exception()
                )
                break
            if msg.type != WSMsgType.TEXT:
                continue

            try:
                data = msg.json()
            except ValueError:
                data = None
            if not isinstance(data, dict):
                await ws.send_json(
                    {"event": "error", "data": {"message": "Invalid message"}}
                )
                continue

            action = data.get("action")
            asset_id = data.get("assetId")
            if action == "subscribe" and asset_id:
                notifier.subscribe_asset(subscriber, str(asset_id))
            elif action == "unsubscribe" and asset_id:
                notifier.unsubscribe_asset(subscriber, str(asset_id))
            else:
                await ws.send_json(
                    {"event": "error", "data": {"message": f"Unknown action: {action}"}}
                )
    finally:
        sender.cancel()
        try:
            await sender
        except asyncio.CancelledError:
            pass
        notifier.disconnect(subscriber)

    return ws


def create_app(
    store: AssetStore,
    notifier: ProgressNotifier,
    orchestrator: PipelineOrchestrator,
    identify: Identify = default_identify,
    chunk_size: int = 64 * 1024,
    sweep_threshold_seconds: Optional[float] = None,
    sweep_interval_seconds: float = 60,
) -> web.Application:
    app = web.Application()
    app[STORE_KEY] = store
    app[NOTIFIER_KEY] = notifier
    app[ORCHESTRATOR_KEY] = orchestrator
    app[IDENTIFY_KEY] = identify
    app[CHUNK_SIZE_KEY] = chunk_size

    app.router.add_get("/health", health)
    app.router.add_post("/assets", register_asset)
    app.router.add_post("/assets/{asset_id}/process", process_asset)
    app.router.add_get("/assets/{asset_id}/stream", stream_asset)
    app.router.add_get("/ws", progress_socket)

    async def background_tasks(app: web.Application):
        sweeper = None
        if sweep_threshold_seconds:
            sweeper = asyncio.create_task(
                stale_run_sweeper(
                    store,
                    notifier,
                    sweep_threshold_seconds,
                    sweep_interval_seconds,
                    in_flight=lambda: orchestrator.in_flight,
                )
            )
        yield
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        await orchestrator.wait_idle()

    app.cleanup_ctx.append(background_tasks)
    return app

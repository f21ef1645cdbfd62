"""Tests for store.py: in-memory isolation and the REST API client."""

from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from media_pipeline_service.constants.asset_status import AssetStatus
from media_pipeline_service.store import ApiAssetStore, ApiError


class TestInMemoryAssetStore:
    @pytest.mark.asyncio
    async def test_create_stamps_timestamps(self, store, make_asset):
        created = await store.create(make_asset())
        assert created.createdAt is not None
        assert created.updatedAt is not None

    @pytest.mark.asyncio
    async def test_duplicate_create(self, store, make_asset):
        await store.create(make_asset())
        with pytest.raises(ValueError):
            await store.create(make_asset())

    @pytest.mark.asyncio
    async def test_returns_copies(self, store, make_asset):
        await store.create(make_asset())
        copy = await store.get("a1")
        copy.progress = 90
        assert (await store.get("a1")).progress == 0

    @pytest.mark.asyncio
    async def test_save_unknown(self, store, make_asset):
        with pytest.raises(KeyError):
            await store.save(make_asset())

    @pytest.mark.asyncio
    async def test_owner_cannot_change(self, store, make_asset):
        await store.create(make_asset())
        impostor = make_asset(owner_id="u2")
        with pytest.raises(ValueError):
            await store.save(impostor)

    @pytest.mark.asyncio
    async def test_list_by_status(self, store, make_asset):
        await store.create(make_asset("a1"))
        await store.create(make_asset("a2", status=AssetStatus.PROCESSING))
        processing = await store.list_by_status(AssetStatus.PROCESSING)
        assert [a.id for a in processing] == ["a2"]


@pytest.fixture
def api_records():
    return {}


@pytest.fixture
def seen_auth():
    return []


@pytest.fixture
def api_app(api_records, seen_auth):
    async def get_asset(request):
        seen_auth.append(request.headers.get("Authorization"))
        record = api_records.get(request.match_info["asset_id"])
        if record is None:
            return web.json_response({"message": "not found"}, status=404)
        return web.json_response(record)

    async def patch_asset(request):
        asset_id = request.match_info["asset_id"]
        if asset_id == "locked":
            return web.json_response({"message": "locked"}, status=423)
        update = await request.json()
        api_records[asset_id].update(update)
        return web.json_response(api_records[asset_id])

    async def create_asset(request):
        body = await request.json()
        api_records[body["id"]] = body
        return web.json_response(body, status=201)

    async def list_assets(request):
        status = request.query.get("status")
        return web.json_response(
            [r for r in api_records.values() if r.get("status") == status]
        )

    app = web.Application()
    app.router.add_get("/asset/{asset_id}", get_asset)
    app.router.add_patch("/asset/{asset_id}", patch_asset)
    app.router.add_post("/asset", create_asset)
    app.router.add_get("/asset", list_assets)
    return app


class TestApiAssetStore:
    @pytest.mark.asyncio
    async def test_round_trip(
        self, api_app, api_records, seen_auth, make_asset, monkeypatch
    ):
        monkeypatch.setenv("SERVER_API_KEY", "test-key")
        async with TestServer(api_app) as server:
            api_store = ApiAssetStore(base_url=str(server.make_url("")))

            await api_store.create(make_asset())
            asset = await api_store.get("a1")
            assert asset.ownerId == "u1"

            asset.transition_to(AssetStatus.PROCESSING)
            saved = await api_store.save(asset)
            assert saved.status == AssetStatus.PROCESSING

            processing = await api_store.list_by_status(AssetStatus.PROCESSING)
            assert [a.id for a in processing] == ["a1"]

        assert "ownerId" in api_records["a1"]
        assert seen_auth == ["Bearer test-key"]

    @pytest.mark.asyncio
    async def test_save_never_sends_identity(
        self, api_app, api_records, make_asset, monkeypatch
    ):
        monkeypatch.setenv("SERVER_API_KEY", "test-key")
        async with TestServer(api_app) as server:
            api_store = ApiAssetStore(base_url=str(server.make_url("")))
            await api_store.create(make_asset())
            asset = await api_store.get("a1")

            # Ownership changed server-side after the pipeline loaded the record
            api_records["a1"]["ownerId"] = "reassigned"
            await api_store.save(asset)

        assert api_records["a1"]["ownerId"] == "reassigned"
        assert api_records["a1"]["organizationId"] == "org1"

    @pytest.mark.asyncio
    async def test_missing_asset(self, api_app, monkeypatch):
        monkeypatch.setenv("SERVER_API_KEY", "test-key")
        async with TestServer(api_app) as server:
            api_store = ApiAssetStore(base_url=str(server.make_url("")))
            assert await api_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_rejected_update(self, api_app, api_records, make_asset, monkeypatch):
        monkeypatch.setenv("SERVER_API_KEY", "test-key")
        async with TestServer(api_app) as server:
            api_store = ApiAssetStore(base_url=str(server.make_url("")))
            api_records["locked"] = make_asset("locked").model_dump(mode="json")
            with pytest.raises(ApiError) as exc_info:
                await api_store.save(make_asset("locked"))
            assert exc_info.value.status_code == 423

import logging
from typing import Dict, List, Optional, Protocol

import aiohttp

from media_pipeline_service.config import api_headers, config
from media_pipeline_service.constants.asset_status import AssetStatus
from media_pipeline_service.models import Asset, utcnow

logger = logging.getLogger(__name__)

# Owner and tenant are fixed at creation; the pipeline never writes them back.
_IMMUTABLE_FIELDS = {"id", "ownerId", "organizationId", "createdAt"}


class ApiError(Exception):
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class AssetStore(Protocol):
    async def get(self, asset_id: str) -> Optional[Asset]: ...

    async def create(self, asset: Asset) -> Asset: ...

    async def save(self, asset: Asset) -> Asset: ...

    async def list_by_status(self, status: AssetStatus) -> List[Asset]: ...


class InMemoryAssetStore:
    """Process-local store. Hands out copies so callers never share a record."""

    def __init__(self):
        self._assets: Dict[str, Asset] = {}

    async def get(self, asset_id: str) -> Optional[Asset]:
        asset = self._assets.get(asset_id)
        return asset.model_copy(deep=True) if asset else None

    async def create(self, asset: Asset) -> Asset:
        if asset.id in self._assets:
            raise ValueError(f"Asset {asset.id} already exists")
        now = utcnow()
        stored = asset.model_copy(
            deep=True,
            update={"createdAt": asset.createdAt or now, "updatedAt": now},
        )
        self._assets[asset.id] = stored
        return stored.model_copy(deep=True)

    async def save(self, asset: Asset) -> Asset:
        current = self._assets.get(asset.id)
        if current is None:
            raise KeyError(f"Asset {asset.id} not found")
        if (
            current.ownerId != asset.ownerId
            or current.organizationId != asset.organizationId
        ):
            raise ValueError(f"Owner and tenant of asset {asset.id} are immutable")
        stored = asset.model_copy(deep=True, update={"updatedAt": utcnow()})
        self._assets[asset.id] = stored
        return stored.model_copy(deep=True)

    async def list_by_status(self, status: AssetStatus) -> List[Asset]:
        return [
            asset.model_copy(deep=True)
            for asset in self._assets.values()
            if asset.status == status
        ]


class ApiAssetStore:
    """Persists asset records through the intake backend's REST API."""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")

    async def get(self, asset_id: str) -> Optional[Asset]:
        """Fetch an asset by ID.

        Args:
            asset_id: The ID of the asset to fetch

        Returns:
            The asset if found, None otherwise

        Raises:
            ApiError: If the API answers with anything but 200 or 404
        """
        if not asset_id:
            raise ValueError("asset_id cannot be empty")

        url = f"{self.base_url}/asset/{asset_id}"
        logger.debug("Fetching asset from URL: %s", url)

        async with aiohttp.ClientSession() as session:
            async with session.get(url, headers=api_headers()) as response:
                if response.status == 200:
                    return Asset(**await response.json())
                if response.status == 404:
                    return None
                response_text = await response.text()
                raise ApiError(
                    f"Failed to fetch asset {asset_id}: {response_text}",
                    response.status,
                )

    async def create(self, asset: Asset) -> Asset:
        url = f"{self.base_url}/asset"
        body = asset.model_dump(mode="json", exclude_none=True)

        async with aiohttp.ClientSession() as session:
            async with session.post(url, headers=api_headers(), json=body) as response:
                if response.status in (200, 201):
                    return Asset(**await response.json())
                response_text = await response.text()
                raise ApiError(
                    f"Failed to create asset {asset.id}: {response_text}",
                    response.status,
                )

    async def save(self, asset: Asset) -> Asset:
        """Write the pipeline-owned fields of an asset back to the API.

        Args:
            asset: The asset to persist

        Returns:
            The record as stored by the API

        Raises:
            ApiError: If the update is rejected
        """
        url = f"{self.base_url}/asset/{asset.id}"
        asset.updatedAt = utcnow()
        update_data = asset.model_dump(mode="json", exclude=_IMMUTABLE_FIELDS)
        logger.debug("Updating asset %s: %s", asset.id, update_data)

        async with aiohttp.ClientSession() as session:
            async with session.patch(
                url, headers=api_headers(), json=update_data
            ) as response:
                if response.status == 200:
                    return Asset(**await response.json())
                response_text = await response.text()
                raise ApiError(
                    f"Failed to update asset {asset.id}: Status {response.status}, "
                    f"URL: {url}, Response: {response_text}",
                    response.status,
                )

    async def list_by_status(self, status: AssetStatus) -> List[Asset]:
        url = f"{self.base_url}/asset"

        async with aiohttp.ClientSession() as session:
            async with session.get(
                url, headers=api_headers(), params={"status": status.value}
            ) as response:
                if response.status == 200:
                    data = await response.json()
                    return [Asset(**item) for item in data]
                response_text = await response.text()
                raise ApiError(
                    f"Failed to list assets with status {status.value}: {response_text}",
                    response.status,
                )


def build_store(kind: str) -> AssetStore:
    if kind == "memory":
        return InMemoryAssetStore()
    if kind == "api":
        return ApiAssetStore()
    raise ValueError(f"Unknown asset store: {kind}")

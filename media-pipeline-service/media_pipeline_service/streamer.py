import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Tuple

from media_pipeline_service.constants.asset_status import AssetStatus
from media_pipeline_service.models import Asset

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class StreamError(Exception):
    status_code = 500

    def __init__(self, message: str, headers: Optional[Dict[str, str]] = None):
        self.message = message
        self.headers = headers or {}
        super().__init__(self.message)


class NotReadyError(StreamError):
    """The asset has not finished processing"""

    status_code = 400


class NotFoundError(StreamError):
    """The asset or its artifact is missing"""

    status_code = 404


class RangeNotSatisfiableError(StreamError):
    status_code = 416


@dataclass
class StreamPlan:
    status: int
    path: str
    start: int
    length: int
    headers: Dict[str, str] = field(default_factory=dict)


def parse_range(header: Optional[str], total: int) -> Optional[Tuple[int, int]]:
    """Resolve a ``Range`` header against a file of ``total`` bytes.

    Returns an inclusive ``(start, end)`` pair, or None when the whole file
    should be served: no header, a malformed one, or a multi-range request.
    An end beyond the last byte is clamped. A start beyond it, or a start after
    the end, raises RangeNotSatisfiableError.
    """
    if not header:
        return None

    match = _RANGE_RE.match(header.strip())
    if match is None:
        logger.debug("Ignoring unsupported Range header %r", header)
        return None

    first, last = match.groups()
    if not first and not last:
        return None

    unsatisfiable = RangeNotSatisfiableError(
        f"Requested range {header} not satisfiable for {total} bytes",
        headers={"Content-Range": f"bytes */{total}"},
    )

    if not first:
        # Suffix form: the last N bytes
        suffix = int(last)
        if suffix == 0 or total == 0:
            raise unsatisfiable
        return max(total - suffix, 0), total - 1

    start = int(first)
    end = int(last) if last else total - 1
    if start >= total or start > end:
        raise unsatisfiable
    return start, min(end, total - 1)


def plan_stream(asset: Asset, range_header: Optional[str] = None) -> StreamPlan:
    """Work out what to send for a stream request on ``asset``.

    Args:
        asset: The requested asset record
        range_header: Raw value of the request's Range header, if any

    Returns:
        Status, headers and byte span to serve

    Raises:
        NotReadyError: If the asset is not completed
        NotFoundError: If the artifact is gone from storage
        RangeNotSatisfiableError: If the range lies outside the artifact
    """
    if asset.status != AssetStatus.COMPLETED:
        raise NotReadyError("Video is not ready for streaming")

    path = asset.processedFilePath or asset.filePath
    try:
        total = os.path.getsize(path)
    except OSError:
        logger.error("Artifact for asset %s missing at %s", asset.id, path)
        raise NotFoundError("Video file not found")

    content_type = asset.mimeType or "video/mp4"
    byte_range = parse_range(range_header, total)

    if byte_range is None:
        return StreamPlan(
            status=200,
            path=path,
            start=0,
            length=total,
            headers={
                "Content-Length": str(total),
                "Content-Type": content_type,
                "Accept-Ranges": "bytes",
            },
        )

    start, end = byte_range
    length = end - start + 1
    return StreamPlan(
        status=206,
        path=path,
        start=start,
        length=length,
        headers={
            "Content-Range": f"bytes {start}-{end}/{total}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(length),
            "Content-Type": content_type,
        },
    )


async def iter_file_range(
    path: str, start: int, length: int, chunk_size: int = 64 * 1024
) -> AsyncIterator[bytes]:
    """Yield ``length`` bytes of ``path`` starting at ``start``, one chunk at a time.

    The file is opened once, so a replacement published by rename mid-stream
    does not change the bytes being served.
    """
    try:
        f = await asyncio.to_thread(open, path, "rb")
    except FileNotFoundError:
        raise NotFoundError("Video file not found")

    try:
        await asyncio.to_thread(f.seek, start)
        offset = start
        remaining = length
        while remaining > 0:
            chunk = await asyncio.to_thread(f.read, min(chunk_size, remaining))
            if not chunk:
                # File shrank underneath us
                raise NotFoundError(f"Video file truncated at byte {offset}")
            offset += len(chunk)
            remaining -= len(chunk)
            yield chunk
    finally:
        f.close()

import asyncio
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import ffmpeg

from media_pipeline_service.models import MediaMetadata

logger = logging.getLogger(__name__)


class ProbeError(Exception):
    """Raised when technical metadata cannot be read from a media file"""

    pass


class FinalizeError(Exception):
    """Raised when the finalized artifact cannot be produced or published"""

    pass


def _to_int(value) -> Optional[int]:
    if value in (None, "", "N/A"):
        return None
    return int(float(value))


def _to_float(value) -> Optional[float]:
    if value in (None, "", "N/A"):
        return None
    return float(value)


def parse_probe(probe_data: dict) -> MediaMetadata:
    """Map raw ffprobe output onto MediaMetadata.

    Only the first video stream contributes dimensions and codec. A file without
    a video track is not an error, its video fields simply stay None.

    Args:
        probe_data: FFprobe data as returned by ``ffmpeg.probe``

    Returns:
        The extracted technical attributes

    Raises:
        ProbeError: If a present field cannot be interpreted
    """
    streams = probe_data.get("streams") or []
    fmt = probe_data.get("format") or {}

    video_stream = next(
        (stream for stream in streams if stream.get("codec_type") == "video"), None
    )
    has_audio = any(stream.get("codec_type") == "audio" for stream in streams)

    try:
        return MediaMetadata(
            duration=_to_float(fmt.get("duration")),
            width=_to_int(video_stream.get("width")) if video_stream else None,
            height=_to_int(video_stream.get("height")) if video_stream else None,
            codec=video_stream.get("codec_name") if video_stream else None,
            bitrate=_to_int(fmt.get("bit_rate")),
            hasAudio=has_audio,
        )
    except (TypeError, ValueError) as e:
        raise ProbeError(f"Unreadable probe output: {e}")


async def probe_media(path: str) -> MediaMetadata:
    """Inspect a stored media file with ffprobe.

    Pure inspection, nothing on disk is touched. ffprobe blocks, so it runs on
    a worker thread.

    Args:
        path: Path to the stored source file

    Returns:
        The technical attributes of the file

    Raises:
        ProbeError: If ffprobe fails or the file does not exist
    """
    if not os.path.exists(path):
        raise ProbeError(f"Source file not found: {path}")

    try:
        probe = await asyncio.to_thread(ffmpeg.probe, path)
    except ffmpeg.Error as e:
        error_msg = e.stderr.decode(errors="replace") if e.stderr else str(e)
        raise ProbeError(f"FFprobe failed for {path}: {error_msg}")
    except OSError as e:
        raise ProbeError(f"FFprobe could not be executed for {path}: {e}")

    metadata = parse_probe(probe)
    logger.debug(
        "Probed %s: duration=%s %sx%s codec=%s bitrate=%s audio=%s",
        path,
        metadata.duration,
        metadata.width,
        metadata.height,
        metadata.codec,
        metadata.bitrate,
        metadata.hasAudio,
    )
    return metadata


class Finalizer(ABC):
    """Produces the artifact served to streaming readers.

    Output is written to a staging file next to the final location and only
    renamed into place once complete, so a partial artifact is never visible at
    the published path.
    """

    def __init__(self, processed_dir: str):
        self.processed_dir = processed_dir

    async def finalize(self, source_path: str, artifact_name: str) -> str:
        if not os.path.exists(source_path):
            raise FinalizeError(f"Source file not found: {source_path}")

        os.makedirs(self.processed_dir, exist_ok=True)
        final_path = os.path.join(self.processed_dir, artifact_name)
        staging_path = os.path.join(
            self.processed_dir, f".{artifact_name}.partial-{uuid.uuid4().hex}"
        )

        try:
            await self._produce(source_path, staging_path)
            if not os.path.exists(staging_path):
                raise FinalizeError(f"Artifact was not created: {staging_path}")
            os.replace(staging_path, final_path)
        except FinalizeError:
            _remove_quietly(staging_path)
            raise
        except Exception as e:
            _remove_quietly(staging_path)
            raise FinalizeError(f"Error finalizing {source_path}: {str(e)}")

        logger.info(
            "Published artifact %s (%s bytes)", final_path, os.path.getsize(final_path)
        )
        return final_path

    @abstractmethod
    async def _produce(self, source_path: str, staging_path: str) -> None:
        """Write the complete artifact to ``staging_path``."""


class CopyFinalizer(Finalizer):
    """Publishes a byte-for-byte copy of the source."""

    async def _produce(self, source_path: str, staging_path: str) -> None:
        await asyncio.to_thread(shutil.copyfile, source_path, staging_path)


class RemuxFinalizer(Finalizer):
    """Stream-copies the source into a faststart container without re-encoding."""

    async def _produce(self, source_path: str, staging_path: str) -> None:
        stream = ffmpeg.input(source_path)
        # The staging name hides the extension, so the muxer is named explicitly.
        stream = ffmpeg.output(
            stream,
            staging_path,
            c="copy",
            movflags="+faststart",
            f=_container_format(source_path),
        )

        process = await asyncio.create_subprocess_exec(
            *stream.compile(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise FinalizeError(
                f"FFmpeg remux failed: {stderr.decode(errors='replace') if stderr else 'Unknown error'}"
            )


def _container_format(path: str) -> str:
    ext = os.path.splitext(path)[1].lower().lstrip(".")
    return {"mkv": "matroska", "webm": "webm", "avi": "avi", "flv": "flv"}.get(
        ext, "mp4"
    )


def _remove_quietly(path: str) -> None:
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logger.warning("Could not remove staging file %s: %s", path, e)


def build_finalizer(kind: str, processed_dir: str) -> Finalizer:
    if kind == "copy":
        return CopyFinalizer(processed_dir)
    if kind == "remux":
        return RemuxFinalizer(processed_dir)
    raise ValueError(f"Unknown finalizer: {kind}")

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from media_pipeline_service.constants.asset_status import (
    AssetStatus,
    Checkpoint,
    ClassificationStatus,
)

ALLOWED_TRANSITIONS = {
    AssetStatus.UPLOADING: {AssetStatus.PROCESSING, AssetStatus.FAILED},
    AssetStatus.PROCESSING: {AssetStatus.COMPLETED, AssetStatus.FAILED},
    AssetStatus.COMPLETED: set(),
    AssetStatus.FAILED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when an asset is moved along a transition the lifecycle does not allow"""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TechnicalMetadata(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    hasAudio: Optional[bool] = None


class MediaMetadata(BaseModel):
    """Result of probing a stored media file. Absent streams leave fields as None."""

    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    hasAudio: bool = False


class ClassificationVerdict(BaseModel):
    classification: ClassificationStatus
    confidence: float = Field(ge=0.0, le=1.0)


class Asset(BaseModel):
    id: str
    ownerId: str = Field(frozen=True)
    organizationId: str = Field(frozen=True)
    title: str
    category: str = "uncategorized"
    filename: str
    originalFilename: str
    filePath: str
    processedFilePath: Optional[str] = None
    fileSize: int = 0
    mimeType: str = "video/mp4"
    duration: Optional[float] = None
    metadata: TechnicalMetadata = Field(default_factory=TechnicalMetadata)
    status: AssetStatus = AssetStatus.UPLOADING
    classificationStatus: ClassificationStatus = ClassificationStatus.PENDING
    classificationConfidence: Optional[float] = None
    progress: int = Field(default=0, ge=0, le=100)
    checkpoint: Optional[Checkpoint] = None
    errorMessage: Optional[str] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    def transition_to(self, status: AssetStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Asset {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def advance_progress(self, checkpoint: Checkpoint) -> None:
        """Commit a checkpoint. Progress never moves backwards within a run."""
        progress = checkpoint.progress
        if progress < self.progress:
            raise ValueError(
                f"Progress for asset {self.id} cannot decrease "
                f"({self.progress} -> {progress})"
            )
        self.progress = progress
        self.checkpoint = checkpoint

    def apply_metadata(self, metadata: MediaMetadata) -> None:
        self.duration = metadata.duration
        self.metadata = TechnicalMetadata(
            width=metadata.width,
            height=metadata.height,
            codec=metadata.codec,
            bitrate=metadata.bitrate,
            hasAudio=metadata.hasAudio,
        )

    def apply_classification(self, verdict: ClassificationVerdict) -> None:
        if self.classificationStatus != ClassificationStatus.PENDING:
            raise InvalidTransitionError(f"Asset {self.id} has already been classified")
        if verdict.classification == ClassificationStatus.PENDING:
            raise ValueError("A classification verdict must be safe or flagged")
        self.classificationStatus = verdict.classification
        self.classificationConfidence = verdict.confidence

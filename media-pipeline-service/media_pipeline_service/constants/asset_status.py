from enum import Enum


class AssetStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ClassificationStatus(str, Enum):
    PENDING = "pending"
    SAFE = "safe"
    FLAGGED = "flagged"


class Checkpoint(str, Enum):
    START = "start"
    METADATA = "metadata"
    CLASSIFY_BEGIN = "classify_begin"
    CLASSIFY_END = "classify_end"
    FINALIZE_BEGIN = "finalize_begin"
    DONE = "done"

    @property
    def progress(self) -> int:
        return CHECKPOINT_PROGRESS[self]


CHECKPOINT_PROGRESS = {
    Checkpoint.START: 10,
    Checkpoint.METADATA: 30,
    Checkpoint.CLASSIFY_BEGIN: 50,
    Checkpoint.CLASSIFY_END: 70,
    Checkpoint.FINALIZE_BEGIN: 90,
    Checkpoint.DONE: 100,
}

TERMINAL_STATUSES = frozenset({AssetStatus.COMPLETED, AssetStatus.FAILED})

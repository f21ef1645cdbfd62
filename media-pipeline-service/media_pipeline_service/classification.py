import asyncio
import logging
import os
import random
from abc import ABC, abstractmethod
from typing import Optional

from media_pipeline_service.constants.asset_status import ClassificationStatus
from media_pipeline_service.models import ClassificationVerdict

logger = logging.getLogger(__name__)


class ClassificationError(Exception):
    """Raised when a classification policy cannot produce a verdict"""

    pass


class ClassificationPolicy(ABC):
    """Decides whether a stored media file is safe or flagged.

    Implementations must only read the file at ``path``.
    """

    @abstractmethod
    async def classify(self, path: str) -> ClassificationVerdict:
        """Return a verdict for the file at ``path`` or raise ClassificationError."""


class RandomClassificationPolicy(ClassificationPolicy):
    """Stand-in policy that flags a fixed fraction of assets at random.

    Confidence is drawn uniformly from [0.7, 1.0]. It is useful for wiring and
    tests, not for actual content review.
    """

    def __init__(
        self,
        flag_probability: float = 0.2,
        rng: Optional[random.Random] = None,
        simulated_delay: float = 0.0,
    ):
        if not 0.0 <= flag_probability <= 1.0:
            raise ValueError("flag_probability must be between 0 and 1")
        self.flag_probability = flag_probability
        self.rng = rng or random.Random()
        self.simulated_delay = simulated_delay

    async def classify(self, path: str) -> ClassificationVerdict:
        if not os.path.exists(path):
            raise ClassificationError(f"Cannot classify missing file: {path}")

        if self.simulated_delay > 0:
            await asyncio.sleep(self.simulated_delay)

        is_flagged = self.rng.random() < self.flag_probability
        verdict = ClassificationVerdict(
            classification=(
                ClassificationStatus.FLAGGED if is_flagged else ClassificationStatus.SAFE
            ),
            confidence=self.rng.random() * 0.3 + 0.7,
        )
        logger.debug(
            "Classified %s as %s (confidence %.2f)",
            path,
            verdict.classification.value,
            verdict.confidence,
        )
        return verdict

"""Content sensitivity classification from upload metadata.

Reference heuristic standing in for a real moderation model: a deny-list
substring match plus a small random false-positive rate that imitates a noisy
classifier. A production classifier keeps the ``classify`` signature but may
call out to a remote service, so callers treat the call as latent and retry it.
"""

import logging
import random
from typing import Iterable, Optional

from models.video import Verdict

logger = logging.getLogger(__name__)

DEFAULT_DENY_LIST = ("nsfw", "explicit", "violence", "attack", "kill", "abuse", "test-flag")
DEFAULT_RANDOM_FLAG_RATE = 0.1


class SensitivityClassifier:
    def __init__(
        self,
        deny_list: Iterable[str] = DEFAULT_DENY_LIST,
        random_flag_rate: float = DEFAULT_RANDOM_FLAG_RATE,
        rng: Optional[random.Random] = None,
    ):
        self.deny_list = tuple(token.strip().lower() for token in deny_list if token and token.strip())
        self.random_flag_rate = min(max(float(random_flag_rate), 0.0), 1.0)
        self.rng = rng or random.Random()

    def matched_tokens(self, title: Optional[str], description: Optional[str] = None) -> list:
        content = f"{title or ''} {description or ''}".lower()
        return [token for token in self.deny_list if token in content]

    def classify(self, title: Optional[str], description: Optional[str] = None) -> Verdict:
        if not (title or "").strip() and not (description or "").strip():
            return Verdict.SAFE

        matches = self.matched_tokens(title, description)
        if matches:
            logger.info("Content flagged: deny-list match %s", ", ".join(matches))
            return Verdict.FLAGGED

        if self.random_flag_rate and self.rng.random() < self.random_flag_rate:
            logger.info("Content flagged: simulated classifier detection")
            return Verdict.FLAGGED

        return Verdict.SAFE

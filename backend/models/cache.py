"""Response cache models."""
from dataclasses import dataclass


@dataclass
class CacheEntry:
    """A cached complete response; valid while ``now < expires_at``."""
    response: str
    expires_at: float  # Unix timestamp in seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

"""Cache tiers sitting in front of the persistent store."""

from .distributed import DistributedCache
from .local import ProcessLocalCache

__all__ = ["DistributedCache", "ProcessLocalCache"]

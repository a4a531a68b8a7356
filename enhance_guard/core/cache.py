"""
Result cache for completed enhancements.

Repeating an identical request (same pixels, task, prompt, quality and
output size) returns the earlier image instead of calling a provider again.
Entries expire after a fixed age and the least recently used entry is
evicted once the cache is full.
"""

import hashlib
import logging
import time
from collections import OrderedDict
from dataclasses import replace
from typing import Callable, Optional, Tuple

from .types import CostClass, EditTask, ProviderResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 50
DEFAULT_TTL_SECONDS = 7 * 24 * 3600.0

Size = Tuple[int, int]


def cache_key(
    image,
    task: EditTask,
    prompt: Optional[str],
    quality: float,
    target_size: Optional[Size],
) -> str:
    """Digest identifying one request.

    Args:
        image: Pillow image; its mode, size and pixel data are hashed
        task: Requested task
        prompt: Free-text instruction; surrounding whitespace is ignored
        quality: Normalised quality in [0, 1]
        target_size: Requested output size, if any

    Returns:
        Hex SHA-256 digest
    """
    digest = hashlib.sha256()
    digest.update(f"{image.mode}:{image.size[0]}x{image.size[1]}".encode("utf-8"))
    digest.update(image.tobytes())
    size = f"{target_size[0]}x{target_size[1]}" if target_size else "-"
    parts = (task.value, (prompt or "").strip(), f"{quality:.3f}", size)
    digest.update("\x1f".join(parts).encode("utf-8"))
    return digest.hexdigest()


class ResultCache:
    """Bounded in-memory cache of provider results with expiry."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ProviderResult]]" = OrderedDict()

    def get(self, key: str) -> Optional[ProviderResult]:
        """Cached result for ``key``, or None if absent or expired.

        A hit is reported as free: nothing is charged for it.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            logger.debug("Cache entry %s expired", key[:12])
            return None

        self._entries.move_to_end(key)
        return replace(
            result,
            image=result.image.copy(),
            cost_class=CostClass.FREE,
            elapsed_time=0.0,
            from_cache=True,
        )

    def put(self, key: str, result: ProviderResult) -> None:
        self._entries[key] = (self._clock(), replace(result, image=result.image.copy()))
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry %s", evicted[:12])

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

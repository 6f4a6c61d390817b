"""In-memory record of files already handed to the replication pipeline.

Identity is the source path, not the content hash. The whole set is dropped
once it grows past the high-water mark, so files still sitting in the watched
directory get re-submitted after a reset and the transport overwrites them.
"""

import logging
import threading

logger = logging.getLogger(__name__)

DEFAULT_HIGH_WATER_MARK = 10_000


class DedupTracker:
    """Process-wide set of seen dedup keys with clear-all eviction.

    Usage::

        tracker = DedupTracker(high_water_mark=10_000)
        if not tracker.seen(path):
            ...
            tracker.mark_seen(path)
        tracker.maybe_reset()
    """

    def __init__(self, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        if high_water_mark < 1:
            raise ValueError(f"high_water_mark must be positive, got {high_water_mark}")
        self._high_water_mark = high_water_mark
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    @property
    def high_water_mark(self) -> int:
        return self._high_water_mark

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def seen(self, key: str) -> bool:
        """Check whether a key was already handed to the pipeline."""
        with self._lock:
            return key in self._keys

    def mark_seen(self, key: str) -> None:
        with self._lock:
            self._keys.add(key)

    def maybe_reset(self) -> bool:
        """Clear every key once the set size exceeds the high-water mark.

        Returns:
            True if the set was cleared.
        """
        with self._lock:
            size = len(self._keys)
            if size <= self._high_water_mark:
                return False
            self._keys.clear()

        logger.info(
            "Cleared dedup tracker: size=%d high_water_mark=%d", size, self._high_water_mark
        )
        return True

    def reset(self) -> None:
        """Unconditionally forget every key."""
        with self._lock:
            self._keys.clear()

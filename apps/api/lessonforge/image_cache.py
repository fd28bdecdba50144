from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .schemas import ImageResult


logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000


def _normalize(value: Optional[str]) -> str:
    return " ".join(str(value or "").lower().split())


def fingerprint(
    *,
    style: str,
    grade: str,
    subject: str,
    size: str,
    description: str,
    theme: Optional[str] = None,
) -> str:
    """Stable cache key for an image request, independent of case and spacing."""
    fields = {
        "description": _normalize(description),
        "grade": _normalize(grade),
        "size": _normalize(size),
        "style": _normalize(style),
        "subject": _normalize(subject),
        "theme": _normalize(theme),
    }
    payload = json.dumps(fields, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class CacheEntry:
    key: str
    image: ImageResult
    description: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    entries: int = 0
    size_bytes: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ImageCache:
    """Process-wide LRU store of generated images keyed by :func:`fingerprint`.

    ``max_entries`` of 0 keeps every entry for the life of the process.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max(0, max_entries)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[ImageResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
        logger.debug("Image cache hit for %r", entry.description[:30])
        return entry.image

    def peek(self, key: str) -> Optional[ImageResult]:
        with self._lock:
            entry = self._entries.get(key)
        return entry.image if entry else None

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def set(self, key: str, image: ImageResult, *, description: str = "") -> bool:
        if image.is_placeholder:
            return False
        # Entries are placement-agnostic.
        stored = image.model_copy(update={"placement_id": None})
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
                return False
            self._entries[key] = CacheEntry(key=key, image=stored, description=description)
            evicted = 0
            if self.max_entries:
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)
                    evicted += 1
            size = len(self._entries)
        if evicted:
            logger.info("Image cache evicted %d least-recently-used entr%s", evicted, "y" if evicted == 1 else "ies")
        logger.debug("Cached image %r (%d entries)", description[:30], size)
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._lock:
            size_bytes = sum(len(entry.image.base64_data) * 3 // 4 for entry in self._entries.values())
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                entries=len(self._entries),
                size_bytes=size_bytes,
            )

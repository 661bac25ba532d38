"""
Stage result cache backing the ``cache`` fallback strategy.

Successful stage outputs are remembered per (stage id, input); when every
attempt of a cache-strategy stage fails, the last remembered output for the
same input is served instead.
"""

from __future__ import annotations

import hashlib
import json
from collections import OrderedDict
from typing import Any

from visualflow.core.config import settings

_MISSING = object()


def cache_key(stage_id: str, stage_input: Any) -> str:
    payload = json.dumps(stage_input, sort_keys=True, default=str, ensure_ascii=False)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{stage_id}:{digest}"


class StageResultCache:
    """Bounded LRU of stage outputs. Accessed only from the event loop."""

    def __init__(self, max_entries: int | None = None):
        self.max_entries = max_entries or settings.STAGE_CACHE_MAX_ENTRIES
        self._data: OrderedDict[str, Any] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def put(self, stage_id: str, stage_input: Any, output: Any) -> None:
        key = cache_key(stage_id, stage_input)
        self._data[key] = output
        self._data.move_to_end(key)
        # Evict LRU entries if over limit
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def get(self, stage_id: str, stage_input: Any, default: Any = _MISSING) -> Any:
        """Cached output, or ``default``. Raises KeyError when no default is given."""
        key = cache_key(stage_id, stage_input)
        if key in self._data:
            self._data.move_to_end(key)
            self.hits += 1
            return self._data[key]
        self.misses += 1
        if default is _MISSING:
            raise KeyError(key)
        return default

    def __contains__(self, item: tuple[str, Any]) -> bool:
        stage_id, stage_input = item
        return cache_key(stage_id, stage_input) in self._data

    def __len__(self) -> int:
        return len(self._data)

    def clear(self) -> None:
        self._data.clear()

"""
Bounded FIFO of labelled training instances.

The window is the owner of record for the training set: the search
structure only mirrors it.  With ``window_size > 0`` the oldest instances
are dropped first so the window never holds more than ``window_size``.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Iterator, List, Optional, Tuple

from civd.models.errors import SchemaMismatch
from civd.models.instances import Instance, Schema

logger = logging.getLogger(__name__)


class TrainingWindow:
    def __init__(self, schema: Schema, window_size: int = 0):
        if window_size < 0:
            raise ValueError("window_size must be >= 0 (0 = unbounded)")
        self.schema = schema
        self.window_size = window_size
        self._items: deque[Instance] = deque()

    # ------------------------------------------------------------------ #
    def build(self, instances: Iterable[Instance], window_size: Optional[int] = None) -> None:
        """Replace the contents, keeping only the most recent ``window_size``."""
        if window_size is not None:
            if window_size < 0:
                raise ValueError("window_size must be >= 0 (0 = unbounded)")
            self.window_size = window_size
        items = list(instances)
        if self.window_size > 0 and len(items) > self.window_size:
            logger.debug(
                f"dropping {len(items) - self.window_size} initial instances "
                f"to fit window of {self.window_size}"
            )
            items = items[-self.window_size:]
        self._items = deque(items)

    def append(self, instance: Instance) -> Optional[List[Instance]]:
        """Add ``instance`` at the back.

        Returns the instances evicted from the front (possibly none), or
        ``None`` when the instance had no class and was ignored.
        """
        self.check_schema(instance)
        if instance.class_is_missing():
            return None

        self._items.append(instance)
        evicted = []
        if self.window_size > 0:
            while len(self._items) > self.window_size:
                evicted.append(self._items.popleft())
        if evicted:
            logger.debug(f"window full, evicted {len(evicted)} oldest instance(s)")
        return evicted

    def revert(self, instance: Instance, evicted: List[Instance]) -> None:
        """Undo the last :meth:`append` that returned ``evicted``."""
        if not self._items or self._items[-1] is not instance:
            raise RuntimeError("can only revert the most recent append")
        self._items.pop()
        self._items.extendleft(reversed(evicted))

    def check_schema(self, instance: Instance) -> None:
        if instance.schema is self.schema:
            return
        msg = self.schema.mismatch_message(instance.schema)
        if msg is not None:
            raise SchemaMismatch(f"Incompatible instance types: {msg}")

    # ------------------------------------------------------------------ #
    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Instance]:
        return iter(self._items)

    def as_sequence(self) -> Tuple[Instance, ...]:
        return tuple(self._items)

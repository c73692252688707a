"""
Range-normalised Euclidean distance over mixed attribute types.

Numeric and date attributes are scaled into [0, 1] with the min / max seen
so far; nominal attributes contribute 0 when equal and 1 otherwise.
Missing values follow the usual instance-based learning rules:

* both missing                  -> difference 1
* one missing (numeric / date)  -> max(n, 1 - n) of the present value
* one missing (nominal)         -> difference 1

The class attribute never contributes.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

import numpy as np

from civd.models.instances import NOMINAL, Instance, Schema

logger = logging.getLogger(__name__)

_ONE_HOT_SCALE = 1.0 / np.sqrt(2.0)

Ranges = Tuple[np.ndarray, np.ndarray]


class EuclideanDistance:
    def __init__(self, normalize: bool = True):
        self.normalize = normalize
        self.schema: Optional[Schema] = None
        self.mins: np.ndarray | None = None
        self.maxs: np.ndarray | None = None
        # bumped whenever the ranges move, so cached embeddings can be refreshed
        self.version = 0

    # ------------------------------------------------------------------ #
    def set_instances(self, schema: Schema, instances: Iterable[Instance]) -> None:
        """Bind to ``schema`` and recompute ranges from scratch."""
        self.schema = schema
        features = schema.feature_indices()
        self._numeric = np.array(
            [i for i in features if schema.attributes[i].is_numeric], dtype=int)
        self._nominal = np.array(
            [i for i in features if schema.attributes[i].kind == NOMINAL], dtype=int)

        n = len(schema)
        self.mins = np.full(n, np.nan)
        self.maxs = np.full(n, np.nan)
        for inst in instances:
            self._extend(inst.values)
        self.version += 1

    def update_ranges(self, instance: Instance) -> bool:
        """Extend ranges with ``instance``; returns True if they moved."""
        if self.schema is None:
            raise RuntimeError("distance has no instances bound")
        before = (self.mins.copy(), self.maxs.copy())
        self._extend(instance.values)
        changed = not (np.array_equal(before[0], self.mins, equal_nan=True)
                       and np.array_equal(before[1], self.maxs, equal_nan=True))
        if changed:
            self.version += 1
        return changed

    def _extend(self, values: np.ndarray) -> None:
        idx = self._numeric
        self.mins[idx] = np.fmin(self.mins[idx], values[idx])
        self.maxs[idx] = np.fmax(self.maxs[idx], values[idx])

    def ranges_with(self, instance: Instance) -> Ranges:
        """Current ranges extended by ``instance``, leaving the stored ones alone."""
        if self.schema is None:
            raise RuntimeError("distance has no instances bound")
        idx = self._numeric
        mins, maxs = self.mins.copy(), self.maxs.copy()
        mins[idx] = np.fmin(mins[idx], instance.values[idx])
        maxs[idx] = np.fmax(maxs[idx], instance.values[idx])
        return mins, maxs

    # ------------------------------------------------------------------ #
    def _norm(self, x: np.ndarray, ranges: Optional[Ranges] = None) -> np.ndarray:
        """Scale numeric columns; x is (..., len(self._numeric))."""
        if not self.normalize:
            return x
        mins, maxs = ranges if ranges is not None else (self.mins, self.maxs)
        lo = mins[self._numeric]
        width = maxs[self._numeric] - lo
        valid = ~np.isnan(lo) & (width > 0)
        safe_width = np.where(valid, width, 1.0)
        scaled = (x - np.where(valid, lo, 0.0)) / safe_width
        # empty or unknown range: every present value sits at 0
        return np.where(valid, scaled, np.where(np.isnan(x), np.nan, 0.0))

    def differences(self, query: np.ndarray, matrix: np.ndarray,
                    ranges: Optional[Ranges] = None) -> np.ndarray:
        """Per-attribute differences between ``query`` and each row of ``matrix``."""
        matrix = np.atleast_2d(matrix)
        diffs = np.zeros((matrix.shape[0], matrix.shape[1]))

        if self._numeric.size:
            q = self._norm(query[self._numeric], ranges)
            m = self._norm(matrix[:, self._numeric], ranges)
            q_missing = np.isnan(query[self._numeric])
            m_missing = np.isnan(matrix[:, self._numeric])
            present = np.where(q_missing, m, q)
            one_missing = np.maximum(present, 1.0 - present)
            d = np.abs(q - m)
            d = np.where(q_missing | m_missing, one_missing, d)
            d = np.where(q_missing & m_missing, 1.0, d)
            diffs[:, self._numeric] = d

        if self._nominal.size:
            q = query[self._nominal]
            m = matrix[:, self._nominal]
            unequal = np.isnan(q) | np.isnan(m) | (q != m)
            diffs[:, self._nominal] = unequal.astype(float)

        return diffs

    def distances(self, query: Instance, matrix: np.ndarray,
                  ranges: Optional[Ranges] = None) -> np.ndarray:
        if matrix.shape[0] == 0:
            return np.empty(0)
        diffs = self.differences(query.values, matrix, ranges)
        return np.sqrt(np.sum(diffs * diffs, axis=1))

    # ------------------------------------------------------------------ #
    def embed(self, matrix: np.ndarray, ranges: Optional[Ranges] = None) -> np.ndarray:
        """Vector encoding whose plain Euclidean distance matches :meth:`distances`
        for complete rows.

        Missing numeric values sit at the middle of the range and missing
        nominal values become an all-zero block, so rows with gaps are only
        approximated.
        """
        matrix = np.atleast_2d(matrix)
        blocks = []
        if self._numeric.size:
            num = self._norm(matrix[:, self._numeric], ranges)
            blocks.append(np.where(np.isnan(num), 0.5, num))
        for idx in self._nominal:
            width = len(self.schema.attributes[idx].values)
            block = np.zeros((matrix.shape[0], width))
            col = matrix[:, idx]
            rows = np.flatnonzero(~np.isnan(col))
            block[rows, col[rows].astype(int)] = _ONE_HOT_SCALE
            blocks.append(block)
        if not blocks:
            return np.zeros((matrix.shape[0], 0))
        return np.hstack(blocks)

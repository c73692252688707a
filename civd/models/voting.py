"""
Gravity-weighted voting and winner-take-all collapse.

Every neighbour pulls its class with weight ``w / (d**2 + eps)``; each
class score is the mean pull of its members on top of a small uniform
baseline ``1 / max(1, N)``.  The single strongest class gets 1.0, the
rest 0.0.
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple

import numpy as np

from civd.models.instances import Instance

logger = logging.getLogger(__name__)

# smallest positive double; only matters for exact-zero distances
EPSILON = np.nextafter(0.0, 1.0)


def gravity_votes(
    labels: Sequence[int],
    weights: Sequence[float],
    distances: Sequence[float],
    num_classes: int,
    num_training: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """Per-class mean gravity vote and per-class neighbour count.

    Classes without a single supporting neighbour come back as ``NaN`` so
    they can never win the comparison in :func:`winner_take_all`.
    """
    labels = np.asarray(labels, dtype=int)
    weights = np.asarray(weights, dtype=np.float64)
    distances = np.asarray(distances, dtype=np.float64)
    if not (len(labels) == len(weights) == len(distances)):
        raise ValueError("labels, weights and distances must be parallel")

    votes = np.full(num_classes, 1.0 / max(1, num_training))
    counts = np.bincount(labels, minlength=num_classes)[:num_classes]

    # a duplicate of the query gives an infinite pull, which is what we want
    with np.errstate(over="ignore", divide="ignore"):
        pull = weights / (distances * distances + EPSILON)
    np.add.at(votes, labels, pull)

    supported = counts > 0
    votes = np.where(supported, votes / np.where(supported, counts, 1), np.nan)
    return votes, counts


def winner_take_all(votes: np.ndarray) -> np.ndarray:
    """One-hot vector of the first class strictly above every earlier one.

    The running maximum starts at 0.0 and ``NaN`` entries are skipped, so
    an all-ineligible input gives an all-zero vector.
    """
    out = np.zeros(len(votes))
    best, best_idx = 0.0, -1
    for i, v in enumerate(votes):
        if not np.isnan(v) and v > best:
            best, best_idx = v, i
    if best_idx >= 0:
        out[best_idx] = 1.0
    return out


def make_distribution(
    neighbors: Sequence[Instance],
    distances: Sequence[float],
    num_classes: int,
    num_training: int,
) -> np.ndarray:
    if len(neighbors) != len(distances):
        raise ValueError("neighbors and distances must be parallel")
    if len(neighbors) == 0:
        return np.zeros(num_classes)

    labels = [int(n.class_value) for n in neighbors]
    weights = [n.weight for n in neighbors]
    votes, counts = gravity_votes(labels, weights, distances, num_classes, num_training)
    dist = winner_take_all(votes)
    logger.debug(f"votes={votes.tolist()} counts={counts.tolist()} -> {dist.tolist()}")
    return dist

"""
Majority-class baseline used while the training window is empty.
"""

from __future__ import annotations

import logging

import numpy as np

from civd.models.instances import Dataset, Instance

logger = logging.getLogger(__name__)


class MajorityClassModel:
    """Class priors with a Laplace seed of one per label."""

    def __init__(self):
        self.distribution: np.ndarray | None = None

    def fit(self, dataset: Dataset) -> "MajorityClassModel":
        counts = np.ones(dataset.schema.num_classes) + dataset.class_counts()
        self.distribution = counts / counts.sum() if counts.size else counts
        logger.debug(f"fallback priors {self.distribution.tolist()}")
        return self

    def predict_distribution(self, instance: Instance) -> np.ndarray:
        if self.distribution is None:
            raise RuntimeError("Fallback model has not been fitted!")
        return self.distribution.copy()

    def predict(self, instance: Instance) -> int:
        return int(np.argmax(self.predict_distribution(instance)))

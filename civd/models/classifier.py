"""
CIVD classifier: all-neighbour voting with gravity-like weights.

Every training instance takes part in every prediction.  Neighbours pull
their class with weight ``w / d**2``, each class is scored by the mean pull
of its members and the strongest class wins outright (one-hot output).

The classifier is updateable: ``update`` appends one labelled instance and,
with ``window_size > 0``, drops the oldest ones so only the most recent
``window_size`` instances are kept.  Until there is at least one labelled
instance, predictions come from a majority-class fallback.

Example
-------
>>> clf = CIVDClassifier(window_size=500)
>>> clf.build(train)                   # Dataset
>>> for inst in stream:
...     dist = clf.predict(inst)       # one-hot numpy vector
...     clf.update(inst)
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

import numpy as np

from civd.models.errors import ConfigurationError, NotBuiltError
from civd.models.fallback import MajorityClassModel
from civd.models.instances import DATE, NOMINAL, NUMERIC, Dataset, Instance, Schema
from civd.models.neighbors import LinearSearch, NeighborSource, make_search
from civd.models.voting import make_distribution
from civd.models.window import TrainingWindow

logger = logging.getLogger(__name__)

CAPABILITIES = {
    "attribute_kinds": (NOMINAL, NUMERIC, DATE),
    "missing_values": True,
    "class_kinds": (NOMINAL,),
    "missing_class_values": True,
    "min_instances": 0,
}


class CIVDClassifier:
    def __init__(self, window_size: int = 0, search: Optional[NeighborSource] = None):
        if window_size < 0:
            raise ConfigurationError("window_size must be >= 0 (0 = unbounded)")
        self.window_size = window_size
        self.search = search if search is not None else LinearSearch()

        self._schema: Optional[Schema] = None
        self._window: Optional[TrainingWindow] = None
        self._fallback: Optional[MajorityClassModel] = None
        self._num_attributes_used = 0
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, cfg: Dict) -> "CIVDClassifier":
        """Build from a config dict (the ``model`` section, or the whole file)."""
        model = cfg.get("model", cfg)
        search_cfg = model.get("search") or {}
        search = make_search(search_cfg.get("strategy", "linear"),
                             **(search_cfg.get("options") or {}))
        return cls(window_size=int(model.get("window_size", 0)), search=search)

    # ------------------------------------------------------------------ #
    # capabilities / options
    # ------------------------------------------------------------------ #
    @staticmethod
    def capabilities() -> Dict:
        return dict(CAPABILITIES)

    def check_capabilities(self, dataset: Dataset) -> None:
        """Raise :class:`ConfigurationError` if ``dataset`` cannot be handled."""
        schema = dataset.schema
        class_attr = schema.class_attribute
        if class_attr is None:
            raise ConfigurationError("Class attribute not set!")
        if class_attr.kind not in CAPABILITIES["class_kinds"]:
            raise ConfigurationError(
                f"Cannot handle {class_attr.kind} class attribute {class_attr.name!r}"
            )
        if not class_attr.values:
            raise ConfigurationError(f"Class attribute {class_attr.name!r} has no labels")
        for i in schema.feature_indices():
            attr = schema.attributes[i]
            if attr.kind not in CAPABILITIES["attribute_kinds"]:
                raise ConfigurationError(
                    f"Cannot handle {attr.kind} attribute {attr.name!r}"
                )

    def get_options(self) -> Dict:
        return {
            "window_size": self.window_size,
            "search": {"strategy": self.search.name,
                       "options": self.search.get_options()},
        }

    def set_options(self, options: Dict) -> None:
        """Apply options in :meth:`get_options` form.

        On a built classifier a new window size trims the window to its most
        recent instances, and the search (new or current) is re-indexed over
        the result.
        """
        options = dict(options)
        window_size = options.pop("window_size", self.window_size)
        search_cfg = options.pop("search", None)
        if options:
            raise ConfigurationError(f"Illegal options: {sorted(options)}")
        window_size = int(window_size)
        if window_size < 0:
            raise ConfigurationError("window_size must be >= 0 (0 = unbounded)")

        with self._lock:
            search = self.search
            if search_cfg is not None:
                search = make_search(search_cfg.get("strategy", "linear"),
                                     **(search_cfg.get("options") or {}))

            window = self._window
            resized = window is not None and window.window_size != window_size
            if resized:
                window = TrainingWindow(self._schema, window_size)
                window.build(self._window.as_sequence())

            if window is not None and (resized or search is not self.search):
                try:
                    search.index(window.as_sequence(), self._schema)
                except Exception:
                    if search is self.search:
                        search.index(self._window.as_sequence(), self._schema)
                    raise

            self.window_size = window_size
            self._window = window
            self.search = search

    # ------------------------------------------------------------------ #
    # build / update / predict
    # ------------------------------------------------------------------ #
    def build(self, dataset: Dataset) -> "CIVDClassifier":
        with self._lock:
            self.check_capabilities(dataset)
            schema = dataset.schema
            labelled = dataset.without_missing_class()

            window = TrainingWindow(schema, self.window_size)
            window.build(labelled)
            fallback = MajorityClassModel().fit(dataset)

            try:
                self.search.index(window.as_sequence(), schema)
            except Exception:
                if self._window is not None:
                    self.search.index(self._window.as_sequence(), self._schema)
                raise

            self._schema = schema
            self._window = window
            self._fallback = fallback
            self._num_attributes_used = sum(
                1 for i in schema.feature_indices()
                if schema.attributes[i].kind in CAPABILITIES["attribute_kinds"]
            )
            logger.info(
                f"built CIVD: {window.size()} training instances "
                f"({len(dataset) - len(labelled)} without class, "
                f"{len(labelled) - window.size()} outside window), "
                f"{schema.num_classes} classes, search={self.search.name}"
            )
        return self

    def update(self, instance: Instance) -> None:
        """Add one instance; instances without a class are ignored."""
        with self._lock:
            self._require_built()
            evicted = self._window.append(instance)
            if evicted is None:
                return
            try:
                if evicted:
                    # trees cannot delete, so rebuild over the surviving window
                    self.search.index(self._window.as_sequence(), self._schema)
                else:
                    self.search.insert(instance)
            except Exception:
                self._window.revert(instance, evicted)
                self.search.index(self._window.as_sequence(), self._schema)
                raise

    def predict(self, instance: Instance) -> np.ndarray:
        """Class distribution for ``instance`` (one-hot unless the window is empty)."""
        with self._lock:
            self._require_built()
            self._window.check_schema(instance)

            n = self._window.size()
            if n == 0:
                return self._fallback.predict_distribution(instance)

            self.search.prepare(instance)
            neighbors, distances = self.search.retrieve_neighbors(instance, n)
            return make_distribution(neighbors, distances, self._schema.num_classes, n)

    distribution_for_instance = predict

    def classify_instance(self, instance: Instance) -> Optional[int]:
        """Index of the winning label, or ``None`` if no class resolved."""
        dist = self.predict(instance)
        if not np.any(dist > 0):
            return None
        return int(np.argmax(dist))

    def predict_label(self, instance: Instance) -> Optional[str]:
        idx = self.classify_instance(instance)
        return None if idx is None else self._schema.label_space[idx]

    # ------------------------------------------------------------------ #
    # introspection
    # ------------------------------------------------------------------ #
    def _require_built(self) -> None:
        if self._window is None:
            raise NotBuiltError("Classifier has not been built!")

    @property
    def is_built(self) -> bool:
        return self._window is not None

    @property
    def num_training(self) -> int:
        return 0 if self._window is None else self._window.size()

    @property
    def num_attributes_used(self) -> int:
        return self._num_attributes_used

    @property
    def label_space(self) -> Tuple[str, ...]:
        return () if self._schema is None else self._schema.label_space

    @property
    def schema(self) -> Optional[Schema]:
        return self._schema

    @property
    def window(self) -> Optional[TrainingWindow]:
        return self._window

    def enumerate_measures(self) -> List[str]:
        return self.search.measure_names()

    def get_measure(self, name: str) -> float:
        return self.search.get_measure(name)

    def __str__(self) -> str:
        if self._window is None:
            return "CIVD: No model built yet."
        if self._window.size() == 0:
            return "Warning: no training instances - majority class model used."
        limit = self.window_size or "unbounded"
        return (
            "CIVD classifier\n"
            f"  training instances: {self._window.size()} (window: {limit})\n"
            f"  classes: {', '.join(self._schema.label_space)}\n"
            f"  attributes used: {self._num_attributes_used}\n"
            f"  neighbour search: {self.search.name} {self.search.get_options()}"
        )

    # locks do not pickle
    def __getstate__(self):
        state = self.__dict__.copy()
        del state["_lock"]
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._lock = threading.RLock()

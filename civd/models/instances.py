"""
Fixed-schema training records.

A :class:`Schema` is the header shared by a dataset: the ordered attributes
plus the position of the class attribute.  An :class:`Instance` stores one
row as a float vector in that order:

* numeric  -> the number itself
* nominal  -> float index of the label in ``Attribute.values``
* date     -> epoch milliseconds
* missing  -> ``NaN``

The class slot lives inside the vector like any other attribute, so a
missing class is simply a ``NaN`` at ``schema.class_index``.

Example
-------
>>> schema = Schema(
...     [Attribute("f", NUMERIC), Attribute("label", NOMINAL, ("A", "B"))],
...     class_index=1,
... )
>>> inst = schema.make_instance([1.5, "B"])
>>> inst.class_value
1.0
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from civd.models.errors import SchemaMismatch

NUMERIC = "numeric"
NOMINAL = "nominal"
DATE = "date"
STRING = "string"

ATTRIBUTE_KINDS = (NUMERIC, NOMINAL, DATE, STRING)


@dataclass(frozen=True)
class Attribute:
    name: str
    kind: str = NUMERIC
    values: Tuple[str, ...] = ()
    date_format: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        if self.kind not in ATTRIBUTE_KINDS:
            raise ValueError(f"unknown attribute kind {self.kind!r}")
        object.__setattr__(self, "values", tuple(str(v) for v in self.values))
        if self.kind == NOMINAL and len(set(self.values)) != len(self.values):
            raise ValueError(f"duplicate labels in nominal attribute {self.name!r}")

    @property
    def is_nominal(self) -> bool:
        return self.kind == NOMINAL

    @property
    def is_numeric(self) -> bool:
        return self.kind in (NUMERIC, DATE)

    def index_of(self, label) -> int:
        try:
            return self.values.index(str(label))
        except ValueError:
            raise ValueError(
                f"{label!r} is not a value of nominal attribute {self.name!r}"
            ) from None

    def encode(self, raw) -> float:
        """Convert one raw Python value into its stored float."""
        if raw is None or (isinstance(raw, float) and math.isnan(raw)):
            return math.nan
        if self.kind == NOMINAL:
            return float(self.index_of(raw))
        if self.kind == DATE:
            return _date_to_millis(raw, self.date_format)
        if self.kind == STRING:
            # string attributes carry no distance information
            return math.nan
        return float(raw)


def _date_to_millis(raw, date_format: Optional[str]) -> float:
    if isinstance(raw, str):
        raw = (datetime.strptime(raw, date_format) if date_format
               else datetime.fromisoformat(raw))
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            raw = raw.replace(tzinfo=timezone.utc)
        return raw.timestamp() * 1000.0
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day,
                        tzinfo=timezone.utc).timestamp() * 1000.0
    return float(raw)


class Schema:
    """Ordered attributes plus the class position."""

    def __init__(self, attributes: Iterable[Attribute], class_index: Optional[int] = None):
        self.attributes: Tuple[Attribute, ...] = tuple(attributes)
        if class_index is not None and not 0 <= class_index < len(self.attributes):
            raise ValueError(f"class_index {class_index} out of range")
        self.class_index = class_index

    # ------------------------------------------------------------------ #
    def __len__(self) -> int:
        return len(self.attributes)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Schema):
            return NotImplemented
        return self.mismatch_message(other) is None

    def __hash__(self):
        return hash((self.attributes, self.class_index))

    def __repr__(self) -> str:
        names = ", ".join(f"{a.name}:{a.kind}" for a in self.attributes)
        return f"Schema([{names}], class_index={self.class_index})"

    # ------------------------------------------------------------------ #
    @property
    def class_attribute(self) -> Optional[Attribute]:
        if self.class_index is None:
            return None
        return self.attributes[self.class_index]

    @property
    def label_space(self) -> Tuple[str, ...]:
        attr = self.class_attribute
        return attr.values if attr is not None else ()

    @property
    def num_classes(self) -> int:
        return len(self.label_space)

    def index_of(self, name: str) -> int:
        for i, attr in enumerate(self.attributes):
            if attr.name == name:
                return i
        raise KeyError(name)

    def feature_indices(self) -> List[int]:
        return [i for i in range(len(self.attributes)) if i != self.class_index]

    def mismatch_message(self, other: "Schema") -> Optional[str]:
        """Describe the first difference between two headers, or ``None``."""
        if len(self.attributes) != len(other.attributes):
            return (f"attribute count differs: {len(self.attributes)} "
                    f"!= {len(other.attributes)}")
        if self.class_index != other.class_index:
            return (f"class index differs: {self.class_index} "
                    f"!= {other.class_index}")
        for i, (a, b) in enumerate(zip(self.attributes, other.attributes)):
            if a.name != b.name:
                return f"attribute {i} name differs: {a.name!r} != {b.name!r}"
            if a.kind != b.kind:
                return f"attribute {a.name!r} kind differs: {a.kind} != {b.kind}"
            if a.values != b.values:
                return (f"attribute {a.name!r} values differ: "
                        f"{list(a.values)} != {list(b.values)}")
        return None

    def make_instance(self, row: Sequence, weight: float = 1.0) -> "Instance":
        if len(row) != len(self.attributes):
            raise ValueError(
                f"row has {len(row)} values, schema has {len(self.attributes)}"
            )
        values = np.array(
            [attr.encode(raw) for attr, raw in zip(self.attributes, row)],
            dtype=np.float64,
        )
        return Instance(values, self, weight)


class Instance:
    """One row of a dataset: float values, a weight and its header."""

    def __init__(self, values, schema: Schema, weight: float = 1.0):
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (len(schema),):
            raise ValueError(
                f"expected {len(schema)} values, got shape {values.shape}"
            )
        if weight < 0:
            raise ValueError("instance weight must be non-negative")
        self.values = values
        self.schema = schema
        self.weight = float(weight)

    def __repr__(self) -> str:
        return f"Instance({self.values.tolist()}, weight={self.weight})"

    @property
    def class_value(self) -> float:
        if self.schema.class_index is None:
            return math.nan
        return float(self.values[self.schema.class_index])

    def class_is_missing(self) -> bool:
        return math.isnan(self.class_value)

    @property
    def features(self) -> np.ndarray:
        if self.schema.class_index is None:
            return self.values
        return np.delete(self.values, self.schema.class_index)

    def is_missing(self, index: int) -> bool:
        return math.isnan(self.values[index])

    def with_class(self, label) -> "Instance":
        """Copy of this instance with the class slot replaced."""
        values = self.values.copy()
        values[self.schema.class_index] = self.schema.class_attribute.encode(label)
        return Instance(values, self.schema, self.weight)


class Dataset:
    """A header plus the ordered instances that share it."""

    def __init__(self, schema: Schema, instances: Iterable[Instance] = ()):
        self.schema = schema
        self.instances: List[Instance] = []
        for inst in instances:
            self.add(inst)

    @classmethod
    def from_rows(cls, schema: Schema, rows: Iterable[Sequence],
                  weights: Optional[Iterable[float]] = None) -> "Dataset":
        rows = list(rows)
        weights = [1.0] * len(rows) if weights is None else list(weights)
        return cls(schema, (schema.make_instance(r, w) for r, w in zip(rows, weights)))

    # ------------------------------------------------------------------ #
    def __len__(self) -> int:
        return len(self.instances)

    def __iter__(self) -> Iterator[Instance]:
        return iter(self.instances)

    def __getitem__(self, idx):
        return self.instances[idx]

    # ------------------------------------------------------------------ #
    def add(self, instance: Instance) -> None:
        if instance.schema is not self.schema:
            msg = self.schema.mismatch_message(instance.schema)
            if msg is not None:
                raise SchemaMismatch(f"instance does not match dataset header: {msg}")
        self.instances.append(instance)

    def without_missing_class(self) -> "Dataset":
        return Dataset(self.schema,
                       (i for i in self.instances if not i.class_is_missing()))

    def class_counts(self) -> np.ndarray:
        """Summed instance weights per label, ignoring missing classes."""
        counts = np.zeros(self.schema.num_classes)
        for inst in self.instances:
            if not inst.class_is_missing():
                counts[int(inst.class_value)] += inst.weight
        return counts

    def to_matrix(self) -> np.ndarray:
        if not self.instances:
            return np.empty((0, len(self.schema)))
        return np.stack([i.values for i in self.instances])

"""
CSV loader for CIVD datasets
============================

Reads a header row plus one instance per line with pandas and turns it into
a :class:`~civd.models.instances.Dataset`.  Column types are decided as
follows:

* ``class_column``, columns listed in ``nominal`` and any non-numeric
  column become **nominal** (labels sorted, unless ``class_values`` fixes
  the class order);
* columns listed in ``dates`` are parsed with ``pandas.to_datetime`` and
  stored as epoch milliseconds;
* everything else stays **numeric**.

Empty cells are missing values.  A test file should be read against the
training header (``schema=train.schema``) so labels map to the same indices.

Example
-------
>>> train = load_csv("data/train.csv", class_column="class", dates=["ts"])
>>> test = load_csv("data/test.csv", class_column="class", schema=train.schema)
>>> len(train), train.schema.label_space
(1200, ('A', 'B', 'C'))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype

from civd.models.instances import (
    DATE, NOMINAL, NUMERIC, Attribute, Dataset, Instance, Schema,
)

logger = logging.getLogger(__name__)

_EPOCH = pd.Timestamp(0, tz="UTC")


def _dates_to_millis(series: pd.Series, date_format: Optional[str]) -> np.ndarray:
    parsed = pd.to_datetime(series, format=date_format, utc=True, errors="coerce")
    return ((parsed - _EPOCH) / pd.Timedelta(milliseconds=1)).to_numpy(dtype=np.float64)


def _labels_to_index(series: pd.Series, attr: Attribute) -> np.ndarray:
    lookup = {label: float(i) for i, label in enumerate(attr.values)}
    out = np.full(len(series), np.nan)
    present = series.notna().to_numpy()
    labels = series[present].astype(str)
    unknown = set(labels) - set(lookup)
    if unknown:
        raise ValueError(
            f"column {attr.name!r} has labels outside {list(attr.values)}: "
            f"{sorted(unknown)}"
        )
    out[present] = labels.map(lookup).to_numpy(dtype=np.float64)
    return out


def infer_schema(
    frame: pd.DataFrame,
    class_column: str,
    nominal: Iterable[str] = (),
    dates: Iterable[str] = (),
    date_format: Optional[str] = None,
    class_values: Optional[Sequence[str]] = None,
) -> Schema:
    nominal, dates = set(nominal), set(dates)
    attributes = []
    for col in frame.columns:
        series = frame[col]
        if col in dates:
            attributes.append(Attribute(col, DATE, date_format=date_format))
        elif col == class_column or col in nominal or not is_numeric_dtype(series):
            if col == class_column and class_values:
                values = tuple(str(v) for v in class_values)
            else:
                values = tuple(sorted(series.dropna().astype(str).unique()))
            attributes.append(Attribute(col, NOMINAL, values))
        else:
            attributes.append(Attribute(col, NUMERIC))
    return Schema(attributes, class_index=list(frame.columns).index(class_column))


def frame_to_dataset(frame: pd.DataFrame, schema: Schema,
                     weights: Optional[np.ndarray] = None) -> Dataset:
    names = [a.name for a in schema.attributes]
    missing = [n for n in names if n not in frame.columns]
    if missing:
        raise ValueError(f"columns missing from data: {missing}")

    columns = []
    for attr in schema.attributes:
        series = frame[attr.name]
        if attr.kind == NOMINAL:
            columns.append(_labels_to_index(series, attr))
        elif attr.kind == DATE:
            columns.append(_dates_to_millis(series, attr.date_format))
        elif attr.kind == NUMERIC:
            columns.append(pd.to_numeric(series, errors="coerce").to_numpy(dtype=np.float64))
        else:
            columns.append(np.full(len(series), np.nan))

    matrix = np.column_stack(columns) if columns else np.empty((len(frame), 0))
    if weights is None:
        weights = np.ones(len(frame))
    return Dataset(schema, (Instance(row, schema, w) for row, w in zip(matrix, weights)))


def load_csv(
    path: str | Path,
    class_column: str,
    nominal: Iterable[str] = (),
    dates: Iterable[str] = (),
    date_format: Optional[str] = None,
    class_values: Optional[Sequence[str]] = None,
    weight_column: Optional[str] = None,
    schema: Optional[Schema] = None,
) -> Dataset:
    nominal = list(nominal)
    # label columns stay as written so "1" never turns into "1.0"
    if schema is not None:
        label_columns = {a.name for a in schema.attributes if a.kind == NOMINAL}
    else:
        label_columns = {class_column, *nominal}
    header = pd.read_csv(path, nrows=0).columns
    frame = pd.read_csv(path, dtype={c: str for c in header if c in label_columns})
    if class_column not in frame.columns:
        raise ValueError(f"class column {class_column!r} not found in {path}")

    weights = None
    if weight_column is not None:
        weights = frame.pop(weight_column).fillna(1.0).to_numpy(dtype=np.float64)

    if schema is None:
        schema = infer_schema(frame, class_column, nominal, dates, date_format, class_values)
    dataset = frame_to_dataset(frame, schema, weights)
    logger.info(f"loaded {len(dataset)} instances, {len(schema)} attributes from {path}")
    return dataset

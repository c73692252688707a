import numpy as np
import pytest

from civd.models.fallback import MajorityClassModel
from civd.models.instances import Attribute, Dataset, Schema, NUMERIC, NOMINAL


def make_schema():
    return Schema([Attribute("f", NUMERIC), Attribute("label", NOMINAL, ("A", "B", "C"))],
                  class_index=1)


def test_laplace_seeded_priors():
    schema = make_schema()
    data = Dataset.from_rows(schema, [[0.0, "A"], [1.0, "A"], [2.0, "B"], [3.0, None]])
    model = MajorityClassModel().fit(data)
    # counts 1 + [2, 1, 0] = [3, 2, 1]
    np.testing.assert_allclose(model.predict_distribution(data[0]), [0.5, 1 / 3, 1 / 6])
    assert model.predict(data[0]) == 0


def test_weights_count():
    schema = make_schema()
    data = Dataset.from_rows(schema, [[0.0, "A"], [1.0, "C"]], weights=[1.0, 5.0])
    model = MajorityClassModel().fit(data)
    assert model.predict(data[0]) == 2


def test_empty_data_is_uniform():
    schema = make_schema()
    model = MajorityClassModel().fit(Dataset(schema, []))
    np.testing.assert_allclose(model.predict_distribution(None), [1 / 3] * 3)


def test_unfitted():
    with pytest.raises(RuntimeError):
        MajorityClassModel().predict_distribution(None)

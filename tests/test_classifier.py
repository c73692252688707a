import pickle

import numpy as np
import pytest

import civd.models.classifier as classifier_module
from civd.models.classifier import CIVDClassifier
from civd.models.errors import ConfigurationError, NotBuiltError, SchemaMismatch
from civd.models.instances import (
    Attribute, Dataset, Schema, DATE, NUMERIC, NOMINAL, STRING,
)
from civd.models.neighbors import SklearnSearch, TorchSearch, make_search


def make_schema(labels=("A", "B")):
    return Schema([Attribute("f", NUMERIC), Attribute("label", NOMINAL, labels)],
                  class_index=1)


def make_dataset(schema, rows):
    return Dataset.from_rows(schema, rows)


def test_tie_goes_to_first_label():
    schema = make_schema()
    clf = CIVDClassifier(window_size=0)
    clf.build(make_dataset(schema, [[1.0, "A"], [2.0, "B"]]))
    dist = clf.predict(schema.make_instance([1.5, None]))
    assert dist.tolist() == [1.0, 0.0]
    assert clf.predict_label(schema.make_instance([1.5, None])) == "A"


def test_window_of_one_keeps_latest_update():
    schema = make_schema()
    clf = CIVDClassifier(window_size=1)
    clf.build(make_dataset(schema, [[0.0, "A"]]))
    first = schema.make_instance([1.0, "B"])
    last = schema.make_instance([2.0, "A"])
    clf.update(first)
    clf.update(last)
    assert clf.num_training == 1
    assert clf.window.as_sequence() == (last,)


def test_empty_training_set_uses_fallback(monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("voting must not run on an empty window")

    monkeypatch.setattr(classifier_module, "make_distribution", boom)
    schema = make_schema()
    clf = CIVDClassifier().build(Dataset(schema, []))
    dist = clf.predict(schema.make_instance([1.0, None]))
    np.testing.assert_allclose(dist, [0.5, 0.5])
    assert "majority class" in str(clf)


def test_fallback_sees_unfiltered_data():
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[1.0, None], [2.0, None]]))
    assert clf.num_training == 0
    np.testing.assert_allclose(clf.predict(schema.make_instance([0.0, None])), [0.5, 0.5])


def test_missing_class_filtered_at_build_and_update():
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[1.0, "A"], [2.0, None], [3.0, "B"]]))
    assert clf.num_training == 2
    clf.update(schema.make_instance([4.0, None]))
    assert clf.num_training == 2


def test_eviction_removes_instance_from_search():
    schema = make_schema()
    clf = CIVDClassifier(window_size=2)
    clf.build(make_dataset(schema, [[0.0, "A"]]))
    clf.update(schema.make_instance([10.0, "B"]))
    clf.update(schema.make_instance([11.0, "B"]))
    # the exact match at 0.0 was evicted, only B remains to vote
    assert clf.predict(schema.make_instance([0.0, None])).tolist() == [0.0, 1.0]
    assert clf.search.size() == 2


def test_stream_window_property():
    rng = np.random.default_rng(11)
    schema = make_schema()
    clf = CIVDClassifier(window_size=5).build(Dataset(schema, []))
    labelled = []
    for i in range(40):
        label = None if rng.random() < 0.25 else "AB"[rng.integers(0, 2)]
        inst = schema.make_instance([rng.normal(), label])
        clf.update(inst)
        if label is not None:
            labelled.append(inst)
        assert clf.num_training <= 5
        assert clf.search.size() == clf.num_training
    assert clf.window.as_sequence() == tuple(labelled[-5:])


def test_predictions_are_one_hot_and_repeatable():
    rng = np.random.default_rng(5)
    schema = make_schema(("A", "B", "C"))
    rows = [[rng.normal(), "ABC"[rng.integers(0, 3)]] for _ in range(30)]
    clf = CIVDClassifier().build(make_dataset(schema, rows))
    for _ in range(10):
        q = schema.make_instance([rng.normal() * 2, None])
        first = clf.predict(q)
        assert sorted(first.tolist()) == [0.0, 0.0, 1.0]
        np.testing.assert_array_equal(clf.predict(q), first)


@pytest.mark.parametrize("search", [SklearnSearch(), TorchSearch(device="cpu")])
def test_other_strategies_predict_like_linear(search):
    rng = np.random.default_rng(9)
    schema = make_schema(("A", "B", "C"))
    data = make_dataset(schema, [[rng.normal(), "ABC"[rng.integers(0, 3)]] for _ in range(20)])
    linear = CIVDClassifier().build(data)
    other = CIVDClassifier(search=search).build(data)
    for _ in range(5):
        q = schema.make_instance([rng.normal(), None])
        np.testing.assert_array_equal(other.predict(q), linear.predict(q))


def test_failed_search_update_leaves_window_unchanged(monkeypatch):
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[0.0, "A"], [1.0, "B"]]))
    before = clf.window.as_sequence()

    def broken(instance):
        raise RuntimeError("index full")

    monkeypatch.setattr(clf.search, "insert", broken)
    with pytest.raises(RuntimeError, match="index full"):
        clf.update(schema.make_instance([2.0, "A"]))
    assert clf.window.as_sequence() == before
    assert clf.search.size() == 2


def test_schema_mismatch_on_update_and_predict():
    clf = CIVDClassifier().build(make_dataset(make_schema(), [[0.0, "A"]]))
    other = make_schema(("A", "B", "C"))
    with pytest.raises(SchemaMismatch):
        clf.update(other.make_instance([1.0, "C"]))
    with pytest.raises(SchemaMismatch):
        clf.predict(other.make_instance([1.0, None]))
    assert clf.num_training == 1


def test_not_built():
    clf = CIVDClassifier()
    assert str(clf) == "CIVD: No model built yet."
    with pytest.raises(NotBuiltError):
        clf.predict(make_schema().make_instance([0.0, None]))
    with pytest.raises(NotBuiltError):
        clf.update(make_schema().make_instance([0.0, "A"]))


def test_capabilities_rejected():
    numeric_class = Schema([Attribute("f", NUMERIC), Attribute("y", NUMERIC)], class_index=1)
    with pytest.raises(ConfigurationError, match="numeric class"):
        CIVDClassifier().build(make_dataset(numeric_class, [[0.0, 1.0]]))

    no_class = Schema([Attribute("f", NUMERIC)])
    with pytest.raises(ConfigurationError, match="Class attribute not set"):
        CIVDClassifier().build(Dataset(no_class, []))

    text = Schema([Attribute("s", STRING), Attribute("label", NOMINAL, ("A",))], class_index=1)
    with pytest.raises(ConfigurationError, match="string attribute"):
        CIVDClassifier().build(Dataset(text, []))


def test_failed_build_keeps_previous_state():
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[0.0, "A"], [1.0, "B"]]))
    bad = Schema([Attribute("f", NUMERIC), Attribute("y", NUMERIC)], class_index=1)
    with pytest.raises(ConfigurationError):
        clf.build(make_dataset(bad, [[0.0, 1.0]]))
    assert clf.num_training == 2
    assert clf.label_space == ("A", "B")
    assert clf.predict(schema.make_instance([0.1, None])).tolist() == [1.0, 0.0]


def test_rebuild_replaces_label_space():
    clf = CIVDClassifier().build(make_dataset(make_schema(), [[0.0, "A"]]))
    schema = make_schema(("x", "y", "z"))
    clf.build(make_dataset(schema, [[0.0, "z"], [5.0, "y"]]))
    assert clf.label_space == ("x", "y", "z")
    assert clf.num_training == 2
    assert clf.predict_label(schema.make_instance([0.2, None])) == "z"


def test_options_round_trip():
    clf = CIVDClassifier(window_size=5, search=make_search("sklearn", algorithm="ball_tree"))
    opts = clf.get_options()
    assert opts == {"window_size": 5,
                    "search": {"strategy": "sklearn",
                               "options": {"algorithm": "ball_tree", "leaf_size": 30,
                                           "normalize": True}}}
    other = CIVDClassifier()
    other.set_options(opts)
    assert other.get_options() == opts

    with pytest.raises(ConfigurationError):
        other.set_options({"k": 3})
    with pytest.raises(ConfigurationError):
        other.set_options({"search": {"strategy": "nope"}})


def test_set_options_reindexes_new_search():
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[0.0, "A"], [1.0, "B"]]))
    clf.set_options({"search": {"strategy": "torch", "options": {"device": "cpu"}}})
    assert isinstance(clf.search, TorchSearch)
    assert clf.search.size() == 2
    assert clf.predict(schema.make_instance([0.9, None])).tolist() == [0.0, 1.0]


def test_from_config():
    cfg = {"model": {"window_size": 3,
                     "search": {"strategy": "torch", "options": {"device": "cpu"}}}}
    clf = CIVDClassifier.from_config(cfg)
    assert clf.window_size == 3
    assert isinstance(clf.search, TorchSearch)
    assert CIVDClassifier.from_config({}).search.name == "linear"


def test_measures_and_attribute_count():
    schema = Schema(
        [Attribute("f", NUMERIC), Attribute("when", DATE),
         Attribute("c", NOMINAL, ("r", "g")), Attribute("label", NOMINAL, ("A", "B"))],
        class_index=3,
    )
    clf = CIVDClassifier().build(make_dataset(schema, [
        [0.0, "2024-01-01", "r", "A"],
        [1.0, "2024-01-02", "g", "B"],
    ]))
    assert clf.num_attributes_used == 3
    q = schema.make_instance([0.5, "2024-01-01", "r", None])
    clf.predict(q)
    clf.predict(q)
    assert "measureNumQueries" in clf.enumerate_measures()
    assert clf.get_measure("measureNumQueries") == 2.0
    assert str(clf).startswith("CIVD classifier")


def test_pickle_round_trip():
    schema = make_schema()
    clf = CIVDClassifier(window_size=3).build(make_dataset(schema, [[0.0, "A"], [1.0, "B"]]))
    restored = pickle.loads(pickle.dumps(clf))
    q = restored.schema.make_instance([0.2, None])
    np.testing.assert_array_equal(restored.predict(q), clf.predict(schema.make_instance([0.2, None])))
    restored.update(restored.schema.make_instance([2.0, "B"]))
    assert restored.num_training == 3


@pytest.mark.parametrize("strategy", ["linear", "sklearn", "torch"])
def test_predict_is_not_affected_by_earlier_queries(strategy):
    schema = Schema([Attribute("x", NUMERIC), Attribute("y", NUMERIC),
                     Attribute("label", NOMINAL, ("A", "B"))], class_index=2)
    options = {"device": "cpu"} if strategy == "torch" else {}
    clf = CIVDClassifier(search=make_search(strategy, **options))
    clf.build(make_dataset(schema, [[0.0, 0.0, "A"], [1.0, 0.6, "B"]]))

    q = schema.make_instance([0.55, 0.2, None])
    assert clf.predict(q).tolist() == [1.0, 0.0]
    clf.predict(schema.make_instance([0.0, 10.0, None]))
    assert clf.predict(q).tolist() == [1.0, 0.0]


def test_failed_index_during_build_restores_previous_search(monkeypatch):
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[0.0, "A"], [1.0, "B"]]))
    new_schema = make_schema()
    original = clf.search.index

    def flaky(instances, schema=None):
        if schema is new_schema:
            raise RuntimeError("index failed")
        original(instances, schema)

    monkeypatch.setattr(clf.search, "index", flaky)
    with pytest.raises(RuntimeError, match="index failed"):
        clf.build(make_dataset(new_schema, [[5.0, "B"], [6.0, "B"], [7.0, "A"]]))
    assert clf.schema is schema
    assert clf.num_training == 2
    assert clf.search.size() == 2
    assert clf.predict(schema.make_instance([0.1, None])).tolist() == [1.0, 0.0]


def test_set_options_resizes_live_window():
    schema = make_schema()
    clf = CIVDClassifier().build(make_dataset(schema, [[0.0, "A"], [1.0, "B"], [2.0, "B"]]))
    clf.set_options({"window_size": 2})
    assert clf.get_options()["window_size"] == 2
    assert clf.window.window_size == 2
    assert [i.values[0] for i in clf.window] == [1.0, 2.0]
    assert clf.search.size() == 2

    clf.update(schema.make_instance([3.0, "A"]))
    assert [i.values[0] for i in clf.window] == [2.0, 3.0]
    assert clf.predict(schema.make_instance([0.0, None])).tolist() == [0.0, 1.0]


if __name__ == "__main__":
    test_tie_goes_to_first_label()
    test_window_of_one_keeps_latest_update()
    print("✓ all tests passed")

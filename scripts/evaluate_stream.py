#!/usr/bin/env python
"""
Prequential (test-then-train) evaluation of the CIVD classifier.

The first ``evaluation.initial`` rows build the model; every later row is
predicted first and then fed to ``update``.
"""
from __future__ import annotations
import argparse

from tqdm import tqdm

from civd.utils.file_utils import load_config, setup_logging
from civd.utils.metrics import classification_summary
from civd.data.tabular_dataset import load_csv
from civd.models.classifier import CIVDClassifier
from civd.models.instances import Dataset


def load_training_data(cfg):
    data = cfg["data"]
    return load_csv(
        data["train"],
        class_column=data["class_column"],
        nominal=data.get("nominal") or (),
        dates=data.get("dates") or (),
        date_format=data.get("date_format"),
        class_values=data.get("class_values"),
        weight_column=data.get("weight_column"),
    )


def main() -> None:
    # ── parse CLI -------------------------------------------------------
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="configs/default.yaml")
    ap.add_argument("--window-size", type=int, default=None,
                    help="override model.window_size")
    args = ap.parse_args()

    cfg = load_config(args.config)
    setup_logging(cfg.get("logging", {}).get("level", "INFO"))
    if args.window_size is not None:
        cfg.setdefault("model", {})["window_size"] = args.window_size

    # ── data & initial model -------------------------------------------
    dataset = load_training_data(cfg)
    initial = int(cfg.get("evaluation", {}).get("initial", 0))
    clf = CIVDClassifier.from_config(cfg)
    clf.build(Dataset(dataset.schema, dataset[:initial]))
    print(f"▶ Built on {initial} rows, streaming {len(dataset) - initial} more")

    # ── test, then train -----------------------------------------------
    labels, preds = [], []
    for inst in tqdm(dataset[initial:], desc="Prequential", unit="inst"):
        if not inst.class_is_missing():
            labels.append(int(inst.class_value))
            preds.append(clf.classify_instance(inst))
        clf.update(inst)

    summary = classification_summary(labels, preds, dataset.schema.num_classes)
    print(clf)
    print(f"▶ Accuracy {summary['accuracy'] * 100:.2f}%  "
          f"kappa {summary['kappa']:.4f}  "
          f"({summary['n_samples']} scored, {summary['n_unresolved']} unresolved)")
    print(summary["confusion_matrix"])
    for name in clf.enumerate_measures():
        print(f"  {name}: {clf.get_measure(name):.2f}")
    print("✅ Done")


if __name__ == "__main__":
    main()

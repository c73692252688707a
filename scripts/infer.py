#!/usr/bin/env python
"""
Batch inference with the CIVD classifier.

Builds on ``data.train`` and writes one predicted label per row of
``data.test`` to ``logging.predictions_out``:

    row,predicted,actual
"""

import argparse
import csv
from pathlib import Path

from tqdm.auto import tqdm

from civd.utils.file_utils import load_config, setup_logging
from civd.utils.metrics import classification_summary
from civd.data.tabular_dataset import load_csv
from civd.models.classifier import CIVDClassifier


def main():
    # 1) Argparse & config
    p = argparse.ArgumentParser()
    p.add_argument("--config", default="configs/default.yaml")
    p.add_argument("--update", action="store_true",
                   help="feed each labelled test row back into the model after predicting it")
    args = p.parse_args()
    cfg = load_config(args.config)
    setup_logging(cfg.get("logging", {}).get("level", "INFO"))
    data = cfg["data"]

    # 2) Paths
    out_path = Path(cfg.get("logging", {}).get("predictions_out", "outputs/predictions.csv"))
    out_path.parent.mkdir(parents=True, exist_ok=True)

    # 3) Train
    train = load_csv(
        data["train"],
        class_column=data["class_column"],
        nominal=data.get("nominal") or (),
        dates=data.get("dates") or (),
        date_format=data.get("date_format"),
        class_values=data.get("class_values"),
        weight_column=data.get("weight_column"),
    )
    clf = CIVDClassifier.from_config(cfg).build(train)
    print(f"▶ {clf}")

    # 4) Test rows share the training header
    test = load_csv(data["test"], class_column=data["class_column"],
                    weight_column=data.get("weight_column"), schema=train.schema)
    labels = train.schema.label_space

    # 5) Predict
    scored, preds = [], []
    with out_path.open("w", newline="") as fp:
        writer = csv.writer(fp)
        writer.writerow(["row", "predicted", "actual"])
        for i, inst in enumerate(tqdm(test, desc="Predicting", unit="row", dynamic_ncols=True)):
            idx = clf.classify_instance(inst)
            actual = None if inst.class_is_missing() else int(inst.class_value)
            writer.writerow([
                i,
                "" if idx is None else labels[idx],
                "" if actual is None else labels[actual],
            ])
            if actual is not None:
                scored.append(actual)
                preds.append(idx)
                if args.update:
                    clf.update(inst)

    if scored:
        summary = classification_summary(scored, preds, len(labels))
        print(f"▶ Accuracy on labelled test rows: {summary['accuracy'] * 100:.2f}%")
    print(f"✅ Predictions written to {out_path}")


if __name__ == "__main__":
    main()

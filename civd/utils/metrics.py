import numpy as np
from sklearn import metrics


def classification_summary(labels, predictions, num_classes):
    """Accuracy, Cohen's kappa and confusion matrix over label indices.

    Unresolved predictions (``None``) count as wrong and are left out of
    the confusion matrix.
    """
    labels = np.asarray(labels, dtype=int)
    resolved = np.array([p is not None for p in predictions], dtype=bool)
    preds = np.array([-1 if p is None else p for p in predictions], dtype=int)

    accuracy = float(np.mean(preds == labels)) if len(labels) else 0.0
    classes = list(range(num_classes))
    if resolved.any():
        kappa = metrics.cohen_kappa_score(labels[resolved], preds[resolved], labels=classes)
        cm = metrics.confusion_matrix(labels[resolved], preds[resolved], labels=classes)
    else:
        kappa, cm = 0.0, np.zeros((num_classes, num_classes), dtype=int)
    return {
        "accuracy": accuracy,
        "kappa": float(kappa),
        "confusion_matrix": cm,
        "n_samples": int(len(labels)),
        "n_unresolved": int((~resolved).sum()),
    }

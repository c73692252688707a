import logging
from pathlib import Path

import yaml


def load_config(path: str | Path):
    with open(path, "r") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

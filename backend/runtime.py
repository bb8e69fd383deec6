"""Runtime utilities for ensuring directories and shared paths."""
from __future__ import annotations

from pathlib import Path
from typing import Dict

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
SEED_DIR = DATA_DIR / "seed"
EXPORTS_DIR = DATA_DIR / "exports"
LOGS_DIR = PROJECT_ROOT / "logs"

DIRECTORIES = [
    DATA_DIR,
    SEED_DIR,
    EXPORTS_DIR,
    LOGS_DIR,
]


def ensure_runtime_directories() -> Dict[str, Path]:
    """Ensure the standard directory structure exists and return useful paths."""
    for path in DIRECTORIES:
        path.mkdir(parents=True, exist_ok=True)
    return {
        "data": DATA_DIR,
        "seed": SEED_DIR,
        "exports": EXPORTS_DIR,
        "logs": LOGS_DIR,
    }


__all__ = [
    "PROJECT_ROOT",
    "DATA_DIR",
    "SEED_DIR",
    "EXPORTS_DIR",
    "LOGS_DIR",
    "ensure_runtime_directories",
]

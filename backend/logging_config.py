"""Central logging configuration for the catalog pipeline."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Dict

from backend.runtime import ensure_runtime_directories, LOGS_DIR


def _rotating(filename: str, level: int) -> Dict[str, object]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "standard",
        "level": level,
        "filename": str(LOGS_DIR / filename),
        "maxBytes": 5 * 1024 * 1024,
        "backupCount": 3,
        "encoding": "utf-8",
    }


def configure_logging(level: int = logging.INFO) -> Dict[str, Path]:
    """Configure application-wide logging with rotating file handlers.

    Ingestion (sources, snapshots, availability probes) and catalog
    maintenance (activation, pruning, audits) get their own files so a
    failed nightly job can be read without the API noise.
    """
    paths = ensure_runtime_directories()
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": level,
                },
                "app_file": _rotating("app.log", level),
                "ingest_file": _rotating("ingest.log", level),
                "catalog_file": _rotating("catalog.log", level),
            },
            "root": {
                "handlers": ["console", "app_file"],
                "level": level,
            },
            "loggers": {
                "backend.connectors": {
                    "handlers": ["ingest_file", "console"],
                    "level": level,
                    "propagate": False,
                },
                "tankcatalog.ingest": {
                    "handlers": ["ingest_file", "console"],
                    "level": level,
                    "propagate": False,
                },
                "tankcatalog.catalog": {
                    "handlers": ["catalog_file", "console"],
                    "level": level,
                    "propagate": False,
                },
            },
        }
    )
    return paths


__all__ = ["configure_logging"]

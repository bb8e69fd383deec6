"""Service layer helpers for the catalog pipeline."""

from .activation import run_activation_policy  # noqa: F401
from .export import export_catalog  # noqa: F401
from .ingest import ingest_seed_directory  # noqa: F401
from .maintenance import run_maintenance_for_url  # noqa: F401
from .normalizer import run_normalization  # noqa: F401
from .prune import run_legacy_prune  # noqa: F401
from .quality_audit import run_catalog_quality_audit_for_url  # noqa: F401
from .refresh_offers import refresh_offers_for_url  # noqa: F401
from .regression_audit import run_regression_audit_for_url  # noqa: F401

__all__ = [
    "export_catalog",
    "ingest_seed_directory",
    "run_normalization",
    "run_activation_policy",
    "run_legacy_prune",
    "run_regression_audit_for_url",
    "run_catalog_quality_audit_for_url",
    "run_maintenance_for_url",
    "refresh_offers_for_url",
]

"""
ironsync - Multi-source data reconciliation for group game tracking.

Merges per-member data from a live plugin feed, the Wise Old Man API and the
OSRS Wiki under a strict source priority, with TTL caching and field-level
provenance.
"""

__version__ = "0.1.0"

# Re-export core models for convenience
from ironsync.core.config.models import IronsyncConfig
from ironsync.core.reconcile.models import MergedView, SourceKind, SourceRecord

__all__ = ["IronsyncConfig", "MergedView", "SourceKind", "SourceRecord", "__version__"]

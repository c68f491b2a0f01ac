"""
Program Dedup - record linkage for funding-program announcements.

Architecture:
- core/: Pure components (models, normalizer, sectors, keys, grouping,
  merge, reconciler)
- config/: YAML-driven declarative configuration
- engine: Partitioned pipeline orchestrator
- storage: Keyed upsert store collaborators
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

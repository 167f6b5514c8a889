"""
Infrastructure: bulk import of checkpoints into the shard store.
"""

from .importer import DEFAULT_SHARD_BYTES, ShardImporter

__all__ = ["DEFAULT_SHARD_BYTES", "ShardImporter"]

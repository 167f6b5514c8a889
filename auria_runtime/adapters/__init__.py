"""
Storage adapters for the shard cache runtime.
"""

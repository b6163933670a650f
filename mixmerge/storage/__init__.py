"""Storage package — the managed uploads directory and its asset index.

RULES:
- All filesystem paths for assets come from AssetStore
"""

from mixmerge.storage.assets import AssetStore, generate_storage_name

__all__ = ["AssetStore", "generate_storage_name"]

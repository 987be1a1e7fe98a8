"""
Version chains: result types, payload helpers and the version manager.
"""

from .types import ItemMeta, ItemView, ListResult, PresignedGrant, VersionInfo, WriteResult

__all__ = ["ItemMeta", "ItemView", "ListResult", "PresignedGrant", "VersionInfo", "WriteResult"]

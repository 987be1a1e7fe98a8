"""
Result and view types returned by the version manager and metadata index.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PresignedGrant:
    """Time-limited URLs for one externalized content field.

    Attributes:
        blob_url: URL of the raw content blob
        text_url: URL of the text rendition (if one was stored)
        expires_in: Seconds until the URLs expire
    """

    blob_url: str
    text_url: str | None
    expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {"blobUrl": self.blob_url, "textUrl": self.text_url, "expiresIn": self.expires_in}


@dataclass
class ItemMeta:
    """Version metadata attached to an item view.

    Attributes:
        ov: Object version
        cv: Collection version at the time of the write
        at: Version timestamp (Unix ms)
        meta_indexed: Indexed projection
        deleted_at: Deletion timestamp if the version is a tombstone
        created_at: Item creation timestamp (latest reads only)
    """

    ov: int
    cv: int
    at: int
    meta_indexed: dict[str, Any] = field(default_factory=dict)
    deleted_at: int | None = None
    created_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "ov": self.ov,
            "cv": self.cv,
            "at": self.at,
            "metaIndexed": self.meta_indexed,
            "deletedAt": self.deleted_at,
        }
        if self.created_at is not None:
            result["createdAt"] = self.created_at
        return result


@dataclass
class ItemView:
    """An item as seen at one version."""

    id: str
    item: dict[str, Any]
    meta: ItemMeta
    presigned: dict[str, PresignedGrant] = field(default_factory=dict)

    @property
    def deleted(self) -> bool:
        return self.meta.deleted_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item": self.item,
            "_meta": self.meta.to_dict(),
            "presigned": {path: grant.to_dict() for path, grant in self.presigned.items()},
        }


@dataclass(frozen=True)
class WriteResult:
    """Outcome of a committed write."""

    id: str
    ov: int
    cv: int
    at: int

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "ov": self.ov, "cv": self.cv, "at": self.at}


@dataclass(frozen=True)
class VersionInfo:
    """One entry of an item's version history."""

    ov: int
    cv: int
    at: int
    op: str
    actor: str
    reason: str
    function_id: str | None = None
    deleted_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ov": self.ov,
            "cv": self.cv,
            "at": self.at,
            "op": self.op,
            "actor": self.actor,
            "reason": self.reason,
            "functionId": self.function_id,
            "deletedAt": self.deleted_at,
        }


@dataclass
class ListResult:
    """One page of a metadata listing. ``page_token`` is None on the last page."""

    items: list[ItemView] = field(default_factory=list)
    page_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"items": [view.to_dict() for view in self.items], "pageToken": self.page_token}

"""
Metadata index for Chronos.

Lists item heads of one collection by their indexed projection, with
cursor pagination. Filters and sort fields are restricted to the collection's
declared indexed props (plus ``id`` for sorting), so every listing is served
by an expression index on the metadata store.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import ValidationError
from ..routing import RouteTarget
from ..versioning.manager import VersionManager
from ..versioning.types import ListResult
from .filters import Cursor, decode_page_token, encode_page_token, parse_filter, parse_sort

logger = logging.getLogger(__name__)

MAX_LIMIT = 1000


class MetadataIndex:
    """Indexed listings over the metadata store.

    Example:
        >>> index = MetadataIndex(manager)
        >>> page = await index.list_by_meta(target, "users", {"status": "active"}, limit=50)
        >>> page.page_token  # None on the last page
    """

    def __init__(self, manager: VersionManager) -> None:
        self.manager = manager

    async def list_by_meta(
        self,
        target: RouteTarget,
        collection: str,
        filter: dict[str, Any] | None = None,
        limit: int = 100,
        sort: dict[str, int] | None = None,
        after_id: str | None = None,
        page_token: str | None = None,
        presign: bool = False,
        ttl_seconds: int | None = None,
        include_deleted: bool = False,
    ) -> ListResult:
        """List items whose indexed metadata matches ``filter``.

        Raises:
            ValidationError: On a non-indexed filter or sort field, a bad
                operator, a limit outside 1..1000, a malformed page token, or
                when both ``after_id`` and ``page_token`` are given
            NotFoundError: If ``after_id`` names an unknown item
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}, got {limit!r}", field_name="limit")
        if after_id is not None and page_token is not None:
            raise ValidationError("Use either after_id or page_token, not both", field_name="page_token")
        if presign:
            self.manager.presign.resolve_ttl(ttl_seconds)

        indexed = set(self.manager.config.collection_map(collection).indexed_props)
        predicates = parse_filter(filter, indexed)
        sort_spec = parse_sort(sort, indexed)
        cursor = decode_page_token(page_token, sort_spec) if page_token is not None else None

        store = await self.manager.store_for(target, collection)
        page = await store.query(
            target.db_name,
            collection,
            predicates,
            sort_spec,
            limit + 1,
            cursor=cursor,
            after_id=after_id,
            include_deleted=include_deleted,
        )

        heads = page.heads[:limit]
        items = [
            await self.manager.view_for_head(target, collection, head, presign, ttl_seconds)
            for head in heads
        ]
        next_token = None
        if len(page.heads) > limit:
            last = Cursor(value=page.sort_values[limit - 1], item_id=heads[-1].item_id)
            next_token = encode_page_token(last, sort_spec)

        logger.debug(
            "Listed items",
            extra={
                "db_name": target.db_name,
                "collection": collection,
                "count": len(items),
                "has_more": next_token is not None,
            },
        )
        return ListResult(items=items, page_token=next_token)

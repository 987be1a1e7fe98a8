"""
Payload helpers: indexed projection, validation, deep merge, read projection,
blob keys and externalized content fields.

Payloads are open JSON objects. Only the indexed projection is schema-checked.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import secrets
from typing import Any

from ..config import Base64Prop, CollectionMap
from ..errors import ValidationError
from ..index.filters import resolve_path
from ..storage.base import BlobRef

REF_KEY = "$ref"


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode_payload(data: bytes) -> dict[str, Any]:
    return json.loads(data.decode("utf-8"))


def blob_key(collection: str, item_id: str, ov: int, suffix: str = "json") -> str:
    """Object key for a version payload.

    The random token makes keys unique per write attempt, so racing writers
    for the same ov never overwrite each other's blob.
    """
    return f"{collection}/{item_id}/v{ov:06d}-{secrets.token_hex(4)}.{suffix}"


def validate_payload(payload: Any, collection_map: CollectionMap) -> None:
    """Check that the payload is an object carrying every required indexed field.

    Raises:
        ValidationError: Listing every missing field
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object", field_name="payload")
    missing = []
    for name in collection_map.required_indexed:
        found, value = resolve_path(payload, name)
        if not found or value is None:
            missing.append(name)
    if missing:
        raise ValidationError(
            f"Missing required indexed fields: {', '.join(missing)}",
            field_name=missing[0],
            errors=[f"{name} is required" for name in missing],
        )


def project_indexed(payload: dict[str, Any], collection_map: CollectionMap) -> dict[str, Any]:
    """Indexed projection, keyed by the (possibly dotted) prop name."""
    projection = {}
    for name in collection_map.indexed_props:
        found, value = resolve_path(payload, name)
        if found:
            projection[name] = copy.deepcopy(value)
    return projection


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``.

    Nested dicts merge recursively, lists are unioned preserving order
    (existing elements first), anything else is replaced.
    """
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict) and REF_KEY not in current:
            merged[key] = deep_merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            union = list(current)
            for element in value:
                if element not in union:
                    union.append(copy.deepcopy(element))
            merged[key] = union
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def apply_projection(payload: dict[str, Any], projection: list[str] | dict[str, Any] | None) -> dict[str, Any]:
    """Keep only the listed (dotted) fields of a payload.

    ``projection`` is a list of paths or a ``{path: 1}`` mapping.
    """
    if not projection:
        return payload
    if isinstance(projection, dict):
        paths = [path for path, include in projection.items() if include]
    else:
        paths = list(projection)
    result: dict[str, Any] = {}
    for path in paths:
        found, value = resolve_path(payload, path)
        if found:
            _set_path(result, path, copy.deepcopy(value))
    return result


def is_content_ref(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get(REF_KEY), dict)


def extract_content(
    payload: dict[str, Any], base64_props: dict[str, Base64Prop]
) -> dict[str, bytes]:
    """Decode inline base64 content for each externalized field.

    Fields already holding a content reference (carried over from an earlier
    version) are left alone.

    Raises:
        ValidationError: If a field holds neither base64 text nor a reference
    """
    contents = {}
    for path in base64_props:
        found, value = resolve_path(payload, path)
        if not found or value is None or is_content_ref(value):
            continue
        if not isinstance(value, str):
            raise ValidationError(f"Field '{path}' must be base64 text", field_name=path)
        try:
            contents[path] = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"Field '{path}' is not valid base64: {e}", field_name=path)
    return contents


def content_ref(
    blob: BlobRef, size: int, text_blob: BlobRef | None = None
) -> dict[str, Any]:
    """Reference object stored in place of externalized content."""
    return {
        REF_KEY: {
            **blob.to_dict(),
            "size": size,
            "text_key": text_blob.key if text_blob else None,
        }
    }


def replace_field(payload: dict[str, Any], path: str, value: Any) -> None:
    _set_path(payload, path, value)


def content_blobs(
    payload: dict[str, Any], base64_props: dict[str, Base64Prop]
) -> dict[str, tuple[BlobRef, BlobRef | None]]:
    """Content blobs referenced by a payload: field -> (content blob, text blob).

    Raises:
        ValidationError: If a reference lacks its location fields
    """
    refs = {}
    for path in base64_props:
        found, value = resolve_path(payload, path)
        if not found or not is_content_ref(value):
            continue
        ref = value[REF_KEY]
        if not all(isinstance(ref.get(name), str) for name in ("store_key", "bucket", "key")):
            raise ValidationError(f"Field '{path}' holds a malformed content reference", field_name=path)
        blob = BlobRef.from_dict(ref)
        text_blob = None
        if ref.get("text_key"):
            text_blob = BlobRef(
                store_key=blob.store_key,
                bucket=blob.bucket,
                key=ref["text_key"],
                content_type="text/plain; charset=utf-8",
            )
        refs[path] = (blob, text_blob)
    return refs

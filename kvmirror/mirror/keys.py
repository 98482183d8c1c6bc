"""
Field-driven mirror definitions.

Most mirrors follow one shape: a canonical key built from the collection
name, a unique key template and the document id; index keys built from a
few document fields; metadata copied from a few more. field_mirror_spec()
builds that MirrorSpec from configuration instead of code.

Key layout:
    canonical:  <collection>:<uniqueKey>:<docId>
    index:      idx:<collection>:<field>:<uniqueKey>:<slug(value)>:<docId>

where ``uniqueKey`` is the template (e.g. ``"{orgId}:{siteId}"``) with the
path parameters substituted.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import Any

from .engine import Document, MirrorSpec, Params, json_serialize
from .router import pattern_params

DOC_ID_PARAM = "docId"
SLUG_MAX_LENGTH = 80

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")
_TEMPLATE_TOKEN = re.compile(r"\{([^}]+)\}")


def slug_index_value(value: Any, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Lowercase ``value`` and collapse everything but [a-z0-9] into dashes.

    >>> slug_index_value("  Hello, World! ")
    'hello-world'
    """
    text = "" if value is None else str(value)
    slug = _NON_SLUG_CHARS.sub("-", text.strip().lower()).strip("-")
    return slug[:max_length]


def resolve_unique_key(template: str, params: Params) -> str:
    """Substitute ``{name}`` tokens from ``params``; empty if any is missing."""
    template = template.strip()
    missing = False

    def substitute(match: re.Match[str]) -> str:
        nonlocal missing
        value = params.get(match.group(1))
        if value is None or value == "":
            missing = True
            return ""
        return str(value)

    resolved = _TEMPLATE_TOKEN.sub(substitute, template)
    return "" if missing else resolved


def collection_name(document_path: str) -> str:
    """Last static segment of a document path."""
    static = [s for s in document_path.strip("/").split("/") if s and not s.startswith("{")]
    return static[-1] if static else ""


def field_mirror_spec(
    document_path: str,
    unique_key: str,
    index_fields: Sequence[str] = (),
    metadata_fields: Sequence[str] = (),
    serialize: Callable[[Document], Any] = json_serialize,
) -> MirrorSpec:
    """Build a MirrorSpec from field lists.

    Args:
        document_path: Collection path; ``/{docId}`` is appended when the
            path does not already bind ``docId``
        unique_key: Template over path parameters, e.g. ``"{orgId}:{siteId}"``
        index_fields: Fields to index; list values index every element
        metadata_fields: Fields copied into metadata (missing ones as "")
        serialize: Canonical value serializer

    Raises:
        ValueError: If unique_key is empty

    Example:
        >>> spec = field_mirror_spec(
        ...     "organizations/{orgId}/sites/{siteId}/posts",
        ...     "{orgId}:{siteId}",
        ...     index_fields=["tags"],
        ...     metadata_fields=["title"],
        ... )
    """
    if not unique_key or not unique_key.strip():
        raise ValueError('field_mirror_spec requires unique_key (e.g. "{orgId}:{siteId}")')

    base_path = document_path.rstrip("/")
    if DOC_ID_PARAM in pattern_params(base_path):
        pattern = base_path
    else:
        pattern = f"{base_path}/{{{DOC_ID_PARAM}}}"
    collection = collection_name(base_path)
    index_fields = [f for f in index_fields if f and isinstance(f, str)]
    metadata_fields = list(metadata_fields)

    def make_canonical_key(params: Params, data: Document | None) -> str:
        doc_id = params.get(DOC_ID_PARAM)
        resolved = resolve_unique_key(unique_key, params)
        if not collection or not doc_id or not resolved:
            return ""
        return f"{collection}:{resolved}:{doc_id}"

    def make_index_keys(params: Params, data: Document) -> list[str]:
        doc_id = params.get(DOC_ID_PARAM)
        resolved = resolve_unique_key(unique_key, params)
        if not collection or not doc_id or not resolved:
            return []

        keys = []
        for name in index_fields:
            raw = (data or {}).get(name)
            values = raw if isinstance(raw, list) else [raw]
            for value in values:
                if value is None or value == "":
                    continue
                slug = slug_index_value(value)
                if slug:
                    keys.append(f"idx:{collection}:{name}:{resolved}:{slug}:{doc_id}")
        return keys

    def make_metadata(data: Document, params: Params) -> dict[str, Any]:
        data = data or {}
        return {
            name: data[name] if data.get(name) is not None else ""
            for name in metadata_fields
        }

    return MirrorSpec(
        document_pattern=pattern,
        make_canonical_key=make_canonical_key,
        make_index_keys=make_index_keys if index_fields else None,
        make_metadata=make_metadata if metadata_fields else None,
        serialize=serialize,
    )

"""
Mirror engine: keeps KV keys in step with source documents.

This module provides:
- MirrorSpec / create_mirror_handler: per-document reconciliation
- MirrorRouter: fans change events out to handlers by path pattern
- field_mirror_spec: builds a MirrorSpec from field lists
- SafeOperations: KV calls that fall back to the retry queue
- run_with_concurrency: bounded fan-out used for index keys

Key layout:
    <canonicalKey>                  serialized document + metadata
    idx:...                         placeholder "1" + metadata
    idx:manifest:<canonicalKey>     {"indexKeys", "metadataHash", "version"}
"""

from .concurrency import run_with_concurrency
from .engine import (
    ChangeEvent,
    MirrorAction,
    MirrorHandler,
    MirrorResult,
    MirrorSpec,
    create_mirror_handler,
    json_serialize,
)
from .keys import field_mirror_spec, resolve_unique_key, slug_index_value
from .manifest import Manifest, metadata_hash, normalize_index_keys
from .router import MirrorRouter, compile_pattern, match_path, pattern_params
from .safe_ops import SafeOperations

__all__ = [
    # Engine
    "MirrorSpec",
    "MirrorHandler",
    "MirrorResult",
    "MirrorAction",
    "ChangeEvent",
    "create_mirror_handler",
    "json_serialize",
    # Routing
    "MirrorRouter",
    "compile_pattern",
    "match_path",
    "pattern_params",
    # Field-based specs
    "field_mirror_spec",
    "slug_index_value",
    "resolve_unique_key",
    # Manifest
    "Manifest",
    "metadata_hash",
    "normalize_index_keys",
    # Helpers
    "SafeOperations",
    "run_with_concurrency",
]

"""
Index manifests.

For every mirrored document the engine keeps a manifest under
``idx:manifest:<canonicalKey>`` listing the index keys it wrote and a hash
of the metadata they carry. The manifest is what makes cleanup possible:
on delete, or when a field changes, the engine removes exactly the keys the
manifest lists.

Stored value:
    {"indexKeys": ["idx:..."], "metadataHash": "{...}", "version": 3}

Invariants:
    - indexKeys is sorted and free of duplicates
    - metadataHash is the key-sorted JSON of the metadata, so two equal
      mappings always hash the same regardless of insertion order
    - version grows by one on every write
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


def metadata_hash(metadata: dict[str, Any] | None) -> str:
    """Deterministic fingerprint of a metadata mapping."""
    return json.dumps(metadata or {}, sort_keys=True, separators=(",", ":"), default=str)


def normalize_index_keys(keys: Any) -> list[str]:
    """Sorted, de-duplicated, stringified keys with falsy entries removed."""
    if not keys:
        return []
    return sorted({str(key) for key in keys if key})


@dataclass(frozen=True)
class Manifest:
    """Index keys last written for one canonical key."""

    index_keys: list[str] = field(default_factory=list)
    metadata_hash: str = ""
    version: int = 0

    @classmethod
    def from_value(cls, value: Any) -> Manifest:
        """Parse a stored manifest; anything unrecognised reads as empty."""
        if not isinstance(value, dict):
            return cls()
        keys = value.get("indexKeys")
        digest = value.get("metadataHash")
        version = value.get("version")
        return cls(
            index_keys=normalize_index_keys(keys if isinstance(keys, list) else []),
            metadata_hash=digest if isinstance(digest, str) else "",
            version=version if isinstance(version, int) and not isinstance(version, bool) else 0,
        )

    def to_value(self) -> dict[str, Any]:
        return {
            "indexKeys": list(self.index_keys),
            "metadataHash": self.metadata_hash,
            "version": self.version,
        }

    def differs_from(self, index_keys: list[str], digest: str) -> bool:
        return self.index_keys != index_keys or self.metadata_hash != digest

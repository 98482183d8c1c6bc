"""
Mirror reconciliation engine.

A mirror handler keeps the KV store in step with one kind of source
document. For every change event it writes the document's canonical key,
recomputes its index keys, and uses the per-document manifest to add the
new keys, delete the stale ones, and clean up everything on delete.

Invariants:
    - KV failures never escape a handler: every KV call is a safe operation
      that falls back to the retry queue
    - Index keys are recomputed from scratch on every change, so the stored
      set converges to make_index_keys() of the latest document
    - The manifest lists exactly the index keys to delete on cleanup
    - A metadata change (by hash) rewrites every index key, since index
      entries carry the metadata
    - The manifest is written only when its keys or hash change
    - Re-running a handler for the same event is harmless (all KV writes are
      idempotent)

How to change safely:
    - The manifest key layout and value format are read by consumers of the
      KV namespace; keep them stable
    - Keep all KV mutations inside SafeOperations
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from ..config import MirrorConfig
from ..kv.base import KvStore
from .concurrency import run_with_concurrency
from .manifest import Manifest, metadata_hash, normalize_index_keys
from .safe_ops import SafeOperations

logger = logging.getLogger(__name__)

Params = dict[str, str]
Document = dict[str, Any]
IndexKeysResult = Union[Iterable[Any], None, Awaitable[Union[Iterable[Any], None]]]


def json_serialize(data: Document) -> str:
    """Default value serializer: the document as compact JSON."""
    return json.dumps(data, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class MirrorSpec:
    """How one kind of document maps onto KV keys.

    Attributes:
        document_pattern: Source path pattern with ``{name}`` segments,
            e.g. ``organizations/{orgId}/sites/{siteId}/published_posts/{postId}``
        make_canonical_key: ``(params, data) -> str``; an empty key skips the event
        make_index_keys: ``(params, data) -> iterable`` (sync or async);
            indexing is disabled when omitted
        make_metadata: ``(data, params) -> dict`` attached to the canonical
            and index keys, always merged with ``{"canonical": key}``
        serialize: ``data -> value`` stored under the canonical key
    """

    document_pattern: str
    make_canonical_key: Callable[[Params, Document | None], str]
    make_index_keys: Callable[[Params, Document], IndexKeysResult] | None = None
    make_metadata: Callable[[Document, Params], Any] | None = None
    serialize: Callable[[Document], Any] = json_serialize

    @property
    def indexing_enabled(self) -> bool:
        return self.make_index_keys is not None


@dataclass(frozen=True)
class ChangeEvent:
    """A document write: ``after`` is None for deletes."""

    params: Params = field(default_factory=dict)
    before: Document | None = None
    after: Document | None = None

    @property
    def is_delete(self) -> bool:
        return self.after is None


class MirrorAction(Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    SKIPPED = "skipped"


@dataclass
class MirrorResult:
    """What a handler invocation did."""

    canonical_key: str
    action: MirrorAction
    keys_written: list[str] = field(default_factory=list)
    keys_deleted: list[str] = field(default_factory=list)
    manifest_written: bool = False
    failed_operations: int = 0

    @property
    def ok(self) -> bool:
        return self.failed_operations == 0


class MirrorHandler:
    """Reconciles one MirrorSpec against the KV store.

    Example:
        >>> handler = create_mirror_handler(spec, kv=kv, safe_ops=ops)
        >>> result = await handler(ChangeEvent(params, before=None, after=doc))
    """

    def __init__(
        self,
        spec: MirrorSpec,
        kv: KvStore,
        safe_ops: SafeOperations,
        config: MirrorConfig | None = None,
    ) -> None:
        self.spec = spec
        self.kv = kv
        self.safe_ops = safe_ops
        self.config = config or MirrorConfig()

    async def __call__(self, event: ChangeEvent) -> MirrorResult:
        return await self.handle(event)

    def manifest_key(self, canonical_key: str) -> str:
        return f"{self.config.manifest_prefix}{canonical_key}"

    async def handle(self, event: ChangeEvent) -> MirrorResult:
        """Mirror one change event."""
        data = event.before if event.is_delete else event.after
        canonical_key = self.spec.make_canonical_key(event.params, data)

        if not canonical_key:
            logger.warning(
                "Empty canonical key, skipping event",
                extra={"pattern": self.spec.document_pattern, "params": event.params},
            )
            return MirrorResult(canonical_key="", action=MirrorAction.SKIPPED)

        if event.is_delete:
            result = await self._delete(canonical_key)
        else:
            result = await self._upsert(canonical_key, event.params, event.after)

        logger.info(
            "Mirrored document",
            extra={
                "canonical_key": canonical_key,
                "action": result.action.value,
                "written": len(result.keys_written),
                "deleted": len(result.keys_deleted),
                "manifest_written": result.manifest_written,
                "failed": result.failed_operations,
            },
        )
        return result

    async def _delete(self, canonical_key: str) -> MirrorResult:
        result = MirrorResult(canonical_key=canonical_key, action=MirrorAction.DELETE)

        if self.spec.indexing_enabled:
            manifest_key = self.manifest_key(canonical_key)
            previous = await self._read_manifest(manifest_key)
            keys = [*previous.index_keys, canonical_key, manifest_key]
        else:
            keys = [canonical_key]

        await self._delete_keys(keys, result)
        return result

    async def _upsert(self, canonical_key: str, params: Params, data: Document) -> MirrorResult:
        result = MirrorResult(canonical_key=canonical_key, action=MirrorAction.UPSERT)
        metadata = self._build_metadata(canonical_key, params, data)

        value = self.spec.serialize(data)
        ok = await self.safe_ops.put(canonical_key, value, {"metadata": metadata})
        self._track(result, canonical_key, ok)

        if not self.spec.indexing_enabled:
            return result

        next_keys = normalize_index_keys(await self._index_keys(params, data))
        digest = metadata_hash(metadata)
        manifest_key = self.manifest_key(canonical_key)

        previous = await self._read_manifest(manifest_key)
        conflicts = 0
        while True:
            await self._reconcile_index(previous, next_keys, metadata, digest, result)

            if not previous.differs_from(next_keys, digest):
                return result

            current = await self._read_manifest(manifest_key)
            if current.version == previous.version:
                break

            if conflicts >= self.config.manifest_conflict_retries:
                logger.warning(
                    "Manifest changed concurrently, overwriting",
                    extra={"manifest_key": manifest_key, "version": current.version},
                )
                break

            conflicts += 1
            logger.warning(
                "Manifest changed concurrently, reconciling again",
                extra={
                    "manifest_key": manifest_key,
                    "expected_version": previous.version,
                    "version": current.version,
                },
            )
            previous = current

        manifest = Manifest(
            index_keys=next_keys,
            metadata_hash=digest,
            version=max(previous.version, current.version) + 1,
        )
        result.manifest_written = await self.safe_ops.put(manifest_key, manifest.to_value())
        if not result.manifest_written:
            result.failed_operations += 1
        return result

    async def _reconcile_index(
        self,
        previous: Manifest,
        next_keys: list[str],
        metadata: dict[str, Any],
        digest: str,
        result: MirrorResult,
    ) -> None:
        old_keys = set(previous.index_keys)
        wanted = set(next_keys)

        if previous.metadata_hash != digest:
            to_write = list(next_keys)
        else:
            to_write = [key for key in next_keys if key not in old_keys]
        to_remove = [key for key in previous.index_keys if key not in wanted]

        async def write(key: str) -> bool:
            return await self.safe_ops.put_index_meta(key, metadata)

        written = await run_with_concurrency(to_write, self.config.index_concurrency, write)
        for key, ok in zip(to_write, written):
            self._track(result, key, ok is True)

        await self._delete_keys(to_remove, result)

    async def _delete_keys(self, keys: list[str], result: MirrorResult) -> None:
        outcomes = await run_with_concurrency(
            keys, self.config.index_concurrency, self.safe_ops.delete
        )
        for key, ok in zip(keys, outcomes):
            if ok is True:
                result.keys_deleted.append(key)
            else:
                result.failed_operations += 1

    def _track(self, result: MirrorResult, key: str, ok: bool) -> None:
        if ok:
            result.keys_written.append(key)
        else:
            result.failed_operations += 1

    def _build_metadata(self, canonical_key: str, params: Params, data: Document) -> dict[str, Any]:
        custom = self.spec.make_metadata(data, params) if self.spec.make_metadata else None
        if isinstance(custom, dict):
            return {**custom, "canonical": canonical_key}
        return {"canonical": canonical_key}

    async def _index_keys(self, params: Params, data: Document) -> Iterable[Any]:
        keys = self.spec.make_index_keys(params, data)
        if inspect.isawaitable(keys):
            keys = await keys
        return keys or []

    async def _read_manifest(self, manifest_key: str) -> Manifest:
        try:
            value = await self.kv.get(manifest_key, "json")
        except Exception as e:
            logger.warning(
                f"Failed to read manifest, treating as empty: {e}",
                extra={"manifest_key": manifest_key},
            )
            return Manifest()
        return Manifest.from_value(value)


def create_mirror_handler(
    spec: MirrorSpec,
    *,
    kv: KvStore,
    safe_ops: SafeOperations,
    config: MirrorConfig | None = None,
) -> MirrorHandler:
    """Build a handler for ``spec``."""
    return MirrorHandler(spec, kv, safe_ops, config)

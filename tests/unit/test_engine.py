"""
Unit tests for the mirror reconciliation engine.

Tests cover:
- The posts scenario (create, retag, delete)
- Idempotence of repeated events
- Metadata-hash propagation to index keys
- Manifest-driven cleanup
- Failure fallback to the retry queue
- Manifest conflict re-runs
"""

import pytest

from kvmirror.mirror.engine import (
    ChangeEvent,
    MirrorAction,
    MirrorSpec,
    create_mirror_handler,
)
from kvmirror.mirror.keys import slug_index_value
from kvmirror.retry.jobs import OP_DELETE, OP_PUT, OP_PUT_INDEX_META

PARAMS = {"orgId": "orgA", "siteId": "siteB", "postId": "postC"}
CANONICAL = "posts:orgA:siteB:postC"
MANIFEST = "idx:manifest:posts:orgA:siteB:postC"


def tag_keys(p, data):
    org, site, post = p["orgId"], p["siteId"], p["postId"]
    tags = data.get("tags") or []
    return [f"idx:posts:tags:{org}:{site}:{slug_index_value(t)}:{post}" for t in tags]


def posts_spec(**overrides):
    fields = dict(
        document_pattern="organizations/{orgId}/sites/{siteId}/published_posts/{postId}",
        make_canonical_key=lambda p, _: f"posts:{p['orgId']}:{p['siteId']}:{p['postId']}",
        make_index_keys=tag_keys,
        make_metadata=lambda data, _: {"title": data.get("title") or ""},
    )
    fields.update(overrides)
    return MirrorSpec(**fields)


def tag_key(tag):
    return f"idx:posts:tags:orgA:siteB:{tag}:postC"


@pytest.fixture
def handler(kv, safe_ops, mirror_config):
    return create_mirror_handler(posts_spec(), kv=kv, safe_ops=safe_ops, config=mirror_config)


class TestPostsScenario:
    """The canonical create / retag / delete walk-through."""

    @pytest.mark.asyncio
    async def test_create(self, handler, kv):
        """Creating a post writes canonical, index and manifest keys."""
        doc = {"title": "Hello", "tags": ["x", "y"]}

        result = await handler(ChangeEvent(PARAMS, None, doc))

        assert result.action == MirrorAction.UPSERT
        assert result.ok
        assert result.manifest_written
        assert kv.keys() == {CANONICAL, MANIFEST, tag_key("x"), tag_key("y")}
        assert await kv.get(CANONICAL, "json") == doc
        assert kv.metadata(CANONICAL) == {"title": "Hello", "canonical": CANONICAL}
        assert kv.metadata(tag_key("x")) == {"title": "Hello", "canonical": CANONICAL}
        manifest = await kv.get(MANIFEST, "json")
        assert manifest["indexKeys"] == [tag_key("x"), tag_key("y")]
        assert manifest["version"] == 1

    @pytest.mark.asyncio
    async def test_retag_touches_only_the_difference(self, handler, kv):
        """Editing tags [x, y] -> [y, z] adds z, removes x, leaves y alone."""
        before = {"title": "Hello", "tags": ["x", "y"]}
        after = {"title": "Hello", "tags": ["y", "z"]}
        await handler(ChangeEvent(PARAMS, None, before))
        kv.reset_calls()

        result = await handler(ChangeEvent(PARAMS, before, after))

        assert kv.calls_for("put_index_meta") == [tag_key("z")]
        assert kv.calls_for("delete") == [tag_key("x")]
        assert result.keys_deleted == [tag_key("x")]
        assert kv.keys() == {CANONICAL, MANIFEST, tag_key("y"), tag_key("z")}
        manifest = await kv.get(MANIFEST, "json")
        assert manifest["indexKeys"] == [tag_key("y"), tag_key("z")]
        assert manifest["version"] == 2

    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, handler, kv):
        """Deleting the document removes all keys in one pass."""
        doc = {"title": "Hello", "tags": ["y", "z"]}
        await handler(ChangeEvent(PARAMS, None, doc))

        result = await handler(ChangeEvent(PARAMS, doc, None))

        assert result.action == MirrorAction.DELETE
        assert kv.keys() == set()
        assert set(result.keys_deleted) == {CANONICAL, MANIFEST, tag_key("y"), tag_key("z")}


class TestReconciliation:
    """Tests for index bookkeeping rules."""

    @pytest.mark.asyncio
    async def test_repeated_event_is_idempotent(self, handler, kv):
        """Replaying an event leaves the KV state unchanged and skips the manifest."""
        doc = {"title": "Hello", "tags": ["x"]}
        await handler(ChangeEvent(PARAMS, None, doc))
        snapshot = {k: (e.value, e.metadata) for k, e in kv.entries.items()}
        kv.reset_calls()

        result = await handler(ChangeEvent(PARAMS, doc, doc))

        assert {k: (e.value, e.metadata) for k, e in kv.entries.items()} == snapshot
        assert not result.manifest_written
        assert kv.calls_for("put_index_meta") == []
        assert kv.calls_for("put") == [CANONICAL]

    @pytest.mark.asyncio
    async def test_metadata_change_rewrites_all_index_keys(self, handler, kv):
        """A new title propagates to every index key."""
        await handler(ChangeEvent(PARAMS, None, {"title": "Old", "tags": ["x", "y"]}))
        kv.reset_calls()

        await handler(ChangeEvent(PARAMS, None, {"title": "New", "tags": ["x", "y"]}))

        assert sorted(kv.calls_for("put_index_meta")) == [tag_key("x"), tag_key("y")]
        assert kv.metadata(tag_key("x"))["title"] == "New"
        assert kv.metadata(tag_key("y"))["title"] == "New"

    @pytest.mark.asyncio
    async def test_index_keys_normalized(self, kv, safe_ops):
        """Duplicates and falsy entries are dropped, the rest sorted."""
        spec = posts_spec(make_index_keys=lambda p, d: ["b", "", None, "a", "b"])
        handler = create_mirror_handler(spec, kv=kv, safe_ops=safe_ops)

        await handler(ChangeEvent(PARAMS, None, {"title": "T"}))

        assert (await kv.get(MANIFEST, "json"))["indexKeys"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_async_index_key_function(self, kv, safe_ops):
        async def keys(params, data):
            return ["idx:async"]

        handler = create_mirror_handler(posts_spec(make_index_keys=keys), kv=kv, safe_ops=safe_ops)
        await handler(ChangeEvent(PARAMS, None, {"title": "T"}))

        assert "idx:async" in kv.keys()

    @pytest.mark.asyncio
    async def test_canonical_wins_over_custom_metadata(self, kv, safe_ops):
        spec = posts_spec(make_metadata=lambda d, p: {"canonical": "spoofed", "x": 1})
        handler = create_mirror_handler(spec, kv=kv, safe_ops=safe_ops)

        await handler(ChangeEvent(PARAMS, None, {"tags": ["t"]}))

        assert kv.metadata(CANONICAL) == {"canonical": CANONICAL, "x": 1}

    @pytest.mark.asyncio
    async def test_non_mapping_metadata_ignored(self, kv, safe_ops):
        spec = posts_spec(make_metadata=lambda d, p: "not a dict")
        handler = create_mirror_handler(spec, kv=kv, safe_ops=safe_ops)

        await handler(ChangeEvent(PARAMS, None, {"tags": []}))

        assert kv.metadata(CANONICAL) == {"canonical": CANONICAL}

    @pytest.mark.asyncio
    async def test_without_indexing(self, kv, safe_ops):
        """Without make_index_keys only the canonical key is managed."""
        spec = posts_spec(make_index_keys=None)
        handler = create_mirror_handler(spec, kv=kv, safe_ops=safe_ops)

        await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x"]}))
        assert kv.keys() == {CANONICAL}

        await handler(ChangeEvent(PARAMS, {"title": "T"}, None))
        assert kv.keys() == set()
        assert kv.calls_for("get") == []

    @pytest.mark.asyncio
    async def test_custom_serializer(self, kv, safe_ops):
        spec = posts_spec(serialize=lambda d: d["title"].upper(), make_index_keys=None)
        handler = create_mirror_handler(spec, kv=kv, safe_ops=safe_ops)

        await handler(ChangeEvent(PARAMS, None, {"title": "shout"}))

        assert await kv.get(CANONICAL) == "SHOUT"

    @pytest.mark.asyncio
    async def test_empty_canonical_key_is_a_noop(self, kv, safe_ops):
        spec = posts_spec(make_canonical_key=lambda p, d: "")
        handler = create_mirror_handler(spec, kv=kv, safe_ops=safe_ops)

        result = await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x"]}))

        assert result.action == MirrorAction.SKIPPED
        assert kv.calls == []

    @pytest.mark.asyncio
    async def test_unreadable_manifest_treated_as_empty(self, handler, kv):
        """A failing manifest read still mirrors the document."""
        kv.fail_next("get", key=MANIFEST, times=2)

        result = await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x"]}))

        assert result.ok
        assert tag_key("x") in kv.keys()
        assert (await kv.get(MANIFEST, "json"))["indexKeys"] == [tag_key("x")]


class TestFailureFallback:
    """KV failures turn into retry jobs instead of exceptions."""

    @pytest.mark.asyncio
    async def test_failed_index_write_enqueues_retry(self, handler, kv, store, queue_config):
        kv.fail_next("put_index_meta", key=tag_key("x"))

        result = await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x", "y"]}))

        assert result.failed_operations == 1
        assert tag_key("y") in kv.keys()
        entries = store.documents(queue_config.collection)
        assert len(entries) == 1
        assert entries[0]["topic"] == "kv-mirror-retry"
        assert entries[0]["minuteDelay"] == 0
        assert entries[0]["retry"] == 0
        assert entries[0]["payload"] == {
            "op": OP_PUT_INDEX_META,
            "key": tag_key("x"),
            "metadata": {"title": "T", "canonical": CANONICAL},
            "attempt": 0,
        }

    @pytest.mark.asyncio
    async def test_failed_canonical_write_enqueues_put(self, handler, kv, store, queue_config):
        kv.fail_next("put", key=CANONICAL)

        await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": []}))

        payload = store.documents(queue_config.collection)[0]["payload"]
        assert payload["op"] == OP_PUT
        assert payload["key"] == CANONICAL
        assert payload["value"] == '{"title":"T","tags":[]}'
        assert payload["metadata"] == {"title": "T", "canonical": CANONICAL}

    @pytest.mark.asyncio
    async def test_failed_delete_enqueues_del(self, handler, kv, store, queue_config):
        doc = {"title": "T", "tags": ["x"]}
        await handler(ChangeEvent(PARAMS, None, doc))
        kv.fail_next("delete", key=tag_key("x"))

        result = await handler(ChangeEvent(PARAMS, doc, None))

        assert result.failed_operations == 1
        assert kv.keys() == {tag_key("x")}
        payloads = [e["payload"] for e in store.documents(queue_config.collection)]
        assert payloads == [{"op": OP_DELETE, "key": tag_key("x"), "attempt": 0}]

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_swallowed(self, handler, kv, store):
        """Even a broken queue does not make the handler raise."""
        kv.fail_next("put", key=CANONICAL)
        store.fail_next_add()

        result = await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": []}))

        assert result.failed_operations == 1


class TestManifestConflicts:
    """Tests for concurrent manifest changes."""

    @pytest.mark.asyncio
    async def test_concurrent_manifest_change_triggers_rerun(self, handler, kv):
        """If another writer bumps the manifest mid-flight, reconcile against it."""
        await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x"]}))

        original_get = kv.get
        reads = 0

        async def racing_get(key, format="text"):
            nonlocal reads
            if key == MANIFEST:
                reads += 1
                if reads == 2:
                    # Another writer added "w" between our read and our write
                    await kv.put_index_meta(tag_key("w"), {"canonical": CANONICAL})
                    await kv.put(
                        MANIFEST,
                        {
                            "indexKeys": [tag_key("w"), tag_key("x")],
                            "metadataHash": "other",
                            "version": 2,
                        },
                    )
            return await original_get(key, format)

        kv.get = racing_get

        result = await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x", "y"]}))

        assert result.manifest_written
        assert tag_key("w") not in kv.keys()
        assert kv.keys() == {CANONICAL, MANIFEST, tag_key("x"), tag_key("y")}
        manifest = await original_get(MANIFEST, "json")
        assert manifest["indexKeys"] == [tag_key("x"), tag_key("y")]
        assert manifest["version"] == 3

    @pytest.mark.asyncio
    async def test_conflict_retries_exhausted_last_write_wins(self, handler, kv, caplog):
        """A manifest that keeps moving is overwritten after one re-run."""
        await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x"]}))

        original_get = kv.get
        reads = 0

        async def always_racing_get(key, format="text"):
            nonlocal reads
            if key == MANIFEST:
                reads += 1
                if reads >= 2:
                    await kv.put(
                        MANIFEST,
                        {"indexKeys": [tag_key("x")], "metadataHash": "other", "version": reads},
                    )
            return await original_get(key, format)

        kv.get = always_racing_get

        with caplog.at_level("WARNING", logger="kvmirror.mirror.engine"):
            result = await handler(ChangeEvent(PARAMS, None, {"title": "T", "tags": ["x", "y"]}))

        # Initial read, first re-read, re-read after the single re-run
        assert reads == 3
        assert result.manifest_written
        assert "Manifest changed concurrently, overwriting" in caplog.text
        manifest = await original_get(MANIFEST, "json")
        assert manifest["indexKeys"] == [tag_key("x"), tag_key("y")]
        assert manifest["version"] == 4


class TestDeleteCleanup:
    """Deletes rely on the manifest, not on recomputing index keys."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", ["raises", "empty"])
    async def test_manifest_keys_removed_without_index_function(
        self, handler, kv, safe_ops, mirror_config, failure
    ):
        doc = {"title": "Hello", "tags": ["x", "y"]}
        await handler(ChangeEvent(PARAMS, None, doc))

        def broken_keys(params, data):
            if failure == "raises":
                raise RuntimeError("index function unavailable")
            return []

        deleter = create_mirror_handler(
            posts_spec(make_index_keys=broken_keys),
            kv=kv,
            safe_ops=safe_ops,
            config=mirror_config,
        )
        result = await deleter(ChangeEvent(PARAMS, doc, None))

        assert result.action == MirrorAction.DELETE
        assert kv.keys() == set()
        assert set(result.keys_deleted) == {CANONICAL, MANIFEST, tag_key("x"), tag_key("y")}

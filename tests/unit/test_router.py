"""
Unit tests for routing change events to mirror handlers.
"""

import asyncio

import pytest

from kvmirror.config import MirrorConfig
from kvmirror.mirror.engine import MirrorAction, MirrorSpec
from kvmirror.mirror.keys import field_mirror_spec
from kvmirror.mirror.router import MirrorRouter


class TestMirrorRouter:
    """Tests for MirrorRouter."""

    @pytest.fixture
    def router(self, kv, safe_ops, mirror_config):
        router = MirrorRouter(kv, safe_ops, mirror_config)
        router.register(
            field_mirror_spec(
                "organizations/{orgId}/users",
                "{orgId}",
                index_fields=["email"],
                metadata_fields=["name"],
            )
        )
        router.register(
            MirrorSpec(
                document_pattern="organizations/{orgId}/themes/{themeId}",
                make_canonical_key=lambda p, _: f"themes:{p['orgId']}:{p['themeId']}",
            )
        )
        return router

    def test_route_binds_params(self, router):
        matches = router.route("organizations/o1/users/u1")

        assert len(matches) == 1
        handler, params = matches[0]
        assert params == {"orgId": "o1", "docId": "u1"}
        assert handler.spec.document_pattern == "organizations/{orgId}/users/{docId}"

    def test_route_no_match(self, router):
        assert router.route("organizations/o1/unknown/x") == []

    @pytest.mark.asyncio
    async def test_dispatch_upsert_and_delete(self, router, kv):
        doc = {"name": "Ada", "email": "ada@example.com"}

        results = await router.dispatch("organizations/o1/users/u1", None, doc)

        assert [r.action for r in results] == [MirrorAction.UPSERT]
        assert kv.keys() == {
            "users:o1:u1",
            "idx:manifest:users:o1:u1",
            "idx:users:email:o1:ada-example-com:u1",
        }
        assert kv.metadata("idx:users:email:o1:ada-example-com:u1") == {
            "name": "Ada",
            "canonical": "users:o1:u1",
        }

        await router.dispatch("organizations/o1/users/u1", doc, None)
        assert kv.keys() == set()

    @pytest.mark.asyncio
    async def test_dispatch_unmatched_path(self, router, kv):
        assert await router.dispatch("nowhere/1", None, {"a": 1}) == []
        assert kv.keys() == set()

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self, kv, safe_ops):
        """A handler that raises is logged; other handlers still run."""
        router = MirrorRouter(kv, safe_ops)

        def broken(params, data):
            raise RuntimeError("bad spec")

        router.register(MirrorSpec(document_pattern="docs/{id}", make_canonical_key=broken))
        router.register(
            MirrorSpec(
                document_pattern="docs/{id}",
                make_canonical_key=lambda p, _: f"docs:{p['id']}",
            )
        )

        results = await router.dispatch("docs/1", None, {"a": 1})

        assert len(results) == 1
        assert kv.keys() == {"docs:1"}

    @pytest.mark.asyncio
    async def test_handler_timeout(self, kv, safe_ops):
        """Handlers exceeding the timeout are abandoned."""
        router = MirrorRouter(kv, safe_ops, MirrorConfig(timeout_seconds=0.01))

        async def slow_keys(params, data):
            await asyncio.sleep(1)
            return []

        router.register(
            MirrorSpec(
                document_pattern="docs/{id}",
                make_canonical_key=lambda p, _: f"docs:{p['id']}",
                make_index_keys=slow_keys,
            )
        )

        assert await router.dispatch("docs/1", None, {"a": 1}) == []

#!/usr/bin/env python3
"""
kvmirror Demo - Mirrors blog posts into a KV store.

Runs the whole pipeline in memory: mirror handlers, the delayed dispatch
queue, the topic bus and the retry worker. One KV write is made to fail so
the retry path can be followed end to end.
"""

import asyncio
import json

from kvmirror.bus.memory import InMemoryTopicBus
from kvmirror.config import DispatchQueueConfig, MirrorConfig, RetryConfig
from kvmirror.kv.memory import InMemoryKvStore
from kvmirror.mirror import MirrorRouter, MirrorSpec, SafeOperations, slug_index_value
from kvmirror.mirror.keys import field_mirror_spec
from kvmirror.retry import DelayedDispatchQueue, RetryWorker
from kvmirror.store.memory import InMemoryDocumentStore

POST_PATH = "organizations/orgA/sites/siteB/published_posts/postC"


def post_index_keys(params, data):
    org, site, post = params["orgId"], params["siteId"], params["postId"]
    keys = []
    for tag in data.get("tags") or []:
        slug = slug_index_value(tag)
        if slug:
            keys.append(f"idx:posts:tags:{org}:{site}:{slug}:{post}")
    if data.get("name"):
        keys.append(f"idx:posts:slugs:{org}:{site}:{data['name']}")
    return keys


posts_spec = MirrorSpec(
    document_pattern="organizations/{orgId}/sites/{siteId}/published_posts/{postId}",
    make_canonical_key=lambda p, _: f"posts:{p['orgId']}:{p['siteId']}:{p['postId']}",
    make_index_keys=post_index_keys,
    make_metadata=lambda data, _: {
        "title": data.get("title") or "",
        "blurb": data.get("blurb") or "",
        "name": data.get("name") or "",
    },
)

users_spec = field_mirror_spec(
    "organizations/{orgId}/users",
    "{orgId}",
    index_fields=["email"],
    metadata_fields=["name"],
)


def show_keys(kv):
    for key in sorted(kv.keys()):
        meta = kv.metadata(key)
        print(f"    {key}" + (f"  meta={json.dumps(meta)}" if meta else ""))


async def main():
    print("=" * 60)
    print("kvmirror Demo - Mirroring and retries")
    print("=" * 60)

    # 1. Components
    print("\n[Step 1] Initializing in-memory components...")
    kv = InMemoryKvStore()
    bus = InMemoryTopicBus()
    await bus.connect()
    store = InMemoryDocumentStore()

    queue = DelayedDispatchQueue(store, bus, DispatchQueueConfig())
    safe_ops = SafeOperations(kv, queue)
    router = MirrorRouter(kv, safe_ops, MirrorConfig())
    router.register(posts_spec)
    router.register(users_spec)
    worker = RetryWorker(kv, queue, bus, RetryConfig())
    print(f"  - Registered {len(router.handlers)} mirrors")

    # 2. Create a post
    print("\n[Step 2] Publishing a post tagged [x, y]...")
    post = {"title": "Hello", "blurb": "First post", "name": "hello", "tags": ["x", "y"]}
    await router.dispatch(POST_PATH, None, post)
    show_keys(kv)

    # 3. Retag it
    print("\n[Step 3] Retagging the post to [y, z]...")
    updated = {**post, "tags": ["y", "z"]}
    await router.dispatch(POST_PATH, post, updated)
    show_keys(kv)

    # 4. A write that fails
    print("\n[Step 4] Mirroring a user while the KV store rejects one write...")
    kv.fail_next("put_index_meta")
    user = {"name": "Ada", "email": "Ada@Example.com"}
    results = await router.dispatch("organizations/orgA/users/u1", None, user)
    print(f"  - Failed operations: {results[0].failed_operations}")
    print(f"  - Queue entries: {store.count(queue.config.collection)}")

    # 5. Drain the retry path
    print("\n[Step 5] Sweeping the queue and running the retry worker...")
    sweep = await queue.sweep()
    print(f"  - Published {sweep.published} retry job(s)")
    for payload in bus.get_payloads(worker.config.topic):
        outcome = await worker.handle_payload(payload)
        print(f"  - {payload['op']} {payload['key']}: {outcome.value}")
    show_keys(kv)

    # 6. Delete the post
    print("\n[Step 6] Deleting the post...")
    await router.dispatch(POST_PATH, updated, None)
    show_keys(kv)

    await bus.close()

    print("\n" + "=" * 60)
    print("Demo completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())

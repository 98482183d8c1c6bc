"""
kvmirror - Document store to KV store mirroring with durable retries.

This package implements a small change-data-capture pipeline that mirrors
documents from a transactional primary store into an eventually-consistent
key-value store:
- One canonical key per source document (value = serialized document)
- Zero or more index keys per document (value = placeholder, data in metadata)
- A manifest per canonical key remembering the index keys last written
- Layered retries: local HTTP retries, then durable retries via a queue

Architecture:
    ┌──────────────┐     ┌──────────────────┐     ┌─────────────┐
    │ Change event │────▶│  Mirror Handler  │────▶│  KV Client  │──▶ KV store
    └──────────────┘     └────────┬─────────┘     └─────────────┘
                                  │ failed op          ▲
                                  ▼                    │
                        ┌──────────────────┐     ┌─────┴───────┐
                        │ Dispatch Queue   │────▶│ Retry Worker│
                        │ (primary store)  │ bus └─────┬───────┘
                        └──────────────────┘           │ exhausted
                                                       ▼
                                               ┌──────────────┐
                                               │ Dead letters │
                                               └──────────────┘

Invariants:
    - The primary store is the source of truth; the KV store is a derived view
    - Every KV mutation is idempotent (same key => same value and metadata)
    - A mirror handler never raises because the KV store is unhealthy
    - An operation is either applied, pending in the queue, or dead-lettered

How to change safely:
    - Keep manifest layout backward compatible (old manifests lack "version")
    - Never change key formats without a migration that rewrites manifests
    - Verify idempotency by applying the same change event twice

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]

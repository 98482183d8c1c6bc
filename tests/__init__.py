"""
kvmirror Test Suite.

This package contains:
- unit/: Unit tests (in-memory backends, mocked HTTP transport)
- integration/: Whole-pipeline tests (engine -> queue -> bus -> worker)
"""

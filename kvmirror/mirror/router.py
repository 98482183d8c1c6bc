"""
Routes document change events to mirror handlers.

Handlers are registered by document path pattern. A pattern is a slash
separated path where ``{name}`` segments match exactly one path segment
and bind it as a parameter:

    organizations/{orgId}/sites/{siteId}/published_posts/{postId}
    matches organizations/o1/sites/s1/published_posts/p1
    with {"orgId": "o1", "siteId": "s1", "postId": "p1"}

Every handler whose pattern matches runs, each bounded by the mirror
timeout. A handler that times out or raises is logged and does not stop
the others; partial writes are repaired by the next event for the document.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any

from ..config import MirrorConfig
from ..kv.base import KvStore
from .engine import ChangeEvent, MirrorHandler, MirrorResult, MirrorSpec, create_mirror_handler
from .safe_ops import SafeOperations

logger = logging.getLogger(__name__)

_PARAM_SEGMENT = re.compile(r"^\{([^{}/]+)\}$")


def _segments(path: str) -> list[str]:
    return [segment for segment in path.strip("/").split("/") if segment]


def pattern_params(pattern: str) -> list[str]:
    """Names of the ``{name}`` segments in ``pattern``, in order."""
    names = []
    for segment in _segments(pattern):
        match = _PARAM_SEGMENT.match(segment)
        if match:
            names.append(match.group(1))
    return names


def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a document path pattern into a regular expression.

    Raises:
        ValueError: If a parameter name is not an identifier or is repeated
    """
    parts = []
    seen: set[str] = set()
    for segment in _segments(pattern):
        match = _PARAM_SEGMENT.match(segment)
        if not match:
            parts.append(re.escape(segment))
            continue
        name = match.group(1)
        if not name.isidentifier():
            raise ValueError(f"Invalid parameter name {name!r} in pattern {pattern!r}")
        if name in seen:
            raise ValueError(f"Duplicate parameter {name!r} in pattern {pattern!r}")
        seen.add(name)
        parts.append(f"(?P<{name}>[^/]+)")
    return re.compile("^" + "/".join(parts) + "$")


def match_path(pattern: str, path: str) -> dict[str, str] | None:
    """Bind ``path`` against ``pattern``; None when it does not match."""
    match = compile_pattern(pattern).match("/".join(_segments(path)))
    return match.groupdict() if match else None


class MirrorRouter:
    """Registry of mirror handlers keyed by document pattern.

    Example:
        >>> router = MirrorRouter(kv, safe_ops)
        >>> router.register(posts_spec)
        >>> await router.dispatch("organizations/o1/sites/s1/published_posts/p1", None, doc)
    """

    def __init__(
        self,
        kv: KvStore,
        safe_ops: SafeOperations,
        config: MirrorConfig | None = None,
    ) -> None:
        self.kv = kv
        self.safe_ops = safe_ops
        self.config = config or MirrorConfig()
        self._routes: list[tuple[re.Pattern[str], MirrorHandler]] = []

    def register(self, spec: MirrorSpec) -> MirrorHandler:
        """Create and register a handler for ``spec``."""
        regex = compile_pattern(spec.document_pattern)
        handler = create_mirror_handler(
            spec, kv=self.kv, safe_ops=self.safe_ops, config=self.config
        )
        self._routes.append((regex, handler))
        logger.debug("Registered mirror", extra={"pattern": spec.document_pattern})
        return handler

    @property
    def handlers(self) -> list[MirrorHandler]:
        return [handler for _, handler in self._routes]

    def route(self, path: str) -> list[tuple[MirrorHandler, dict[str, str]]]:
        """Handlers matching ``path`` with their bound parameters."""
        normalized = "/".join(_segments(path))
        matches = []
        for regex, handler in self._routes:
            match = regex.match(normalized)
            if match:
                matches.append((handler, match.groupdict()))
        return matches

    async def dispatch(
        self,
        path: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> list[MirrorResult]:
        """Run every handler registered for ``path``.

        Returns:
            Results of the handlers that completed
        """
        matches = self.route(path)
        if not matches:
            logger.debug("No mirror registered for path", extra={"path": path})
            return []

        results = []
        for handler, params in matches:
            event = ChangeEvent(params=params, before=before, after=after)
            try:
                result = await asyncio.wait_for(handler(event), timeout=self.config.timeout_seconds)
            except asyncio.TimeoutError:
                logger.error(
                    "Mirror handler timed out",
                    extra={
                        "path": path,
                        "pattern": handler.spec.document_pattern,
                        "timeout_seconds": self.config.timeout_seconds,
                    },
                )
                continue
            except Exception as e:
                logger.error(
                    f"Mirror handler failed: {e}",
                    extra={"path": path, "pattern": handler.spec.document_pattern},
                    exc_info=True,
                )
                continue
            results.append(result)
        return results

"""
HTTP client for the remote KV store.

Thin wrapper over the KV REST API (values/keys endpoints) with a local
retry loop for transient failures. Every call goes through the same
retrying executor:

    delay = max(Retry-After, min(max_delay, base_delay * 2**attempt) + jitter)

Invariants:
    - 408, 429, 5xx and network errors are retried up to max_retries attempts
    - Other 4xx responses are raised immediately
    - GET on a missing key returns None
    - Request bodies are rebuilt for every attempt

How to change safely:
    - Keep put() encoding compatible with values already in the store
    - Test retry timing with an injected sleep, never with real delays
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..config import KvConfig
from .base import INDEX_PLACEHOLDER_VALUE
from .errors import KvConnectionError, KvError, KvHttpError

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, KvError) and exc.is_retryable


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _write_params(opts: dict[str, Any] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    if not opts:
        return params
    if opts.get("expiration_ttl") is not None:
        params["expiration_ttl"] = str(opts["expiration_ttl"])
    if opts.get("expiration") is not None:
        params["expiration"] = str(opts["expiration"])
    return params


def _encode_form_value(value: Any) -> bytes | str:
    if isinstance(value, (bytes, str)):
        return value
    return json.dumps(value)


def _parse_json(body: str | None, key: str) -> Any:
    if body is None or not body.strip():
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON body", extra={"key": key, "body": body[:200]})
        return None


class KvClient:
    """Async client for the KV REST API.

    Attributes:
        config: KV configuration (endpoint, token, retry tuning)

    Example:
        >>> client = KvClient(KvConfig.from_env())
        >>> meta = {"canonical": "posts:o:s:p"}
        >>> await client.put("posts:o:s:p", {"title": "Hi"}, {"metadata": meta})
        >>> await client.get("posts:o:s:p", "json")
        {'title': 'Hi'}
    """

    def __init__(
        self,
        config: KvConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            config: KV configuration
            transport: Optional httpx transport (tests use httpx.MockTransport)
            sleep: Coroutine used between retries
        """
        credentials = config.account_id and config.namespace_id and config.api_token
        if not config.base_url and not credentials:
            logger.warning(
                "Missing KV settings: CF_ACCOUNT_ID, CLOUDFLARE_NAMESPACE_ID, CLOUDFLARE_API_KEY"
            )
        self.config = config
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=config.namespace_url,
            headers={"Authorization": f"Bearer {config.api_token}"},
            timeout=config.timeout_seconds,
            transport=transport,
        )

    async def __aenter__(self) -> KvClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        await self._http.aclose()

    # Retry discipline

    def _compute_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        backoff_ms = min(self.config.max_delay_ms, self.config.base_delay_ms * (2 ** attempt))
        jitter_ms = random.uniform(0, self.config.jitter_ms) if self.config.jitter_ms > 0 else 0.0
        delay = (backoff_ms + jitter_ms) / 1000.0
        if retry_after is not None:
            delay = max(retry_after, delay)
        return delay

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = exc.retry_after if isinstance(exc, KvHttpError) else None
        return self._compute_delay(retry_state.attempt_number - 1, retry_after)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient KV failure, retrying",
            extra={
                "attempt": retry_state.attempt_number,
                "max_retries": self.config.max_retries,
                "status": getattr(exc, "status", None),
                "key": getattr(exc, "key", None),
                "error": str(exc),
            },
        )

    async def _execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.max_retries)),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(operation)

    async def _send(
        self,
        method: str,
        url: str,
        key: str | None = None,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise KvConnectionError(f"KV {method} failed: {e}", key=key) from e

        if response.is_success:
            return response
        if allow_not_found and response.status_code == 404:
            return response

        raise KvHttpError(
            f"KV {method} failed: {response.status_code} {response.reason_phrase}",
            status=response.status_code,
            key=key,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )

    @staticmethod
    def _value_url(key: str) -> str:
        return f"/values/{quote(key, safe='')}"

    # Public API

    async def put(self, key: str, value: Any, opts: dict[str, Any] | None = None) -> None:
        """Write ``value`` at ``key``.

        When ``opts`` carries ``metadata``, even an empty dict, the value and
        metadata are sent as a multipart form; otherwise the raw value is sent with a content type
        inferred from its type.

        Args:
            key: KV key
            value: str, bytes, or JSON-serializable object
            opts: Optional ``metadata``, ``expiration``, ``expiration_ttl``

        Raises:
            KvHttpError: For non-retryable statuses or after retries
            KvConnectionError: If the network kept failing
        """
        url = self._value_url(key)
        params = _write_params(opts)
        metadata = (opts or {}).get("metadata")

        async def operation() -> None:
            if metadata is not None:
                files = {
                    "value": (None, _encode_form_value(value)),
                    "metadata": (None, json.dumps(metadata)),
                }
                await self._send("PUT", url, key=key, params=params, files=files)
                return

            if isinstance(value, bytes):
                content: bytes | str = value
                content_type = "application/octet-stream"
            elif isinstance(value, str):
                content = value
                content_type = "text/plain"
            else:
                content = json.dumps(value)
                content_type = "application/json"
            await self._send(
                "PUT",
                url,
                key=key,
                params=params,
                content=content,
                headers={"Content-Type": content_type},
            )

        await self._execute(operation)

    async def put_index_meta(
        self,
        key: str,
        metadata: dict[str, Any] | None,
        opts: dict[str, Any] | None = None,
    ) -> None:
        """Write a placeholder value and attach ``metadata``."""
        meta = metadata if isinstance(metadata, dict) else {}
        await self.put(key, INDEX_PLACEHOLDER_VALUE, {**(opts or {}), "metadata": meta})

    async def get(self, key: str, format: str = "text") -> Any:
        """Read the value at ``key``.

        Args:
            key: KV key
            format: ``text`` (str), ``json`` (parsed, None if unparseable) or ``bytes``

        Returns:
            The value, or None if the key does not exist
        """
        url = self._value_url(key)

        async def operation() -> httpx.Response:
            return await self._send("GET", url, key=key, allow_not_found=True)

        response = await self._execute(operation)
        if response.status_code == 404:
            return None
        if format == "bytes":
            return response.content
        if format == "json":
            return _parse_json(response.text, key)
        return response.text

    async def delete(self, key: str) -> None:
        """Delete ``key``. Deleting a missing key is not an error."""
        url = self._value_url(key)

        async def operation() -> None:
            await self._send("DELETE", url, key=key, allow_not_found=True)

        await self._execute(operation)

    async def list_keys(
        self,
        prefix: str = "",
        limit: int = 1000,
        cursor: str = "",
    ) -> dict[str, Any]:
        """List one page of keys.

        Returns:
            The API envelope: ``result`` entries carry ``name``,
            ``expiration`` and ``metadata``; ``result_info.cursor`` pages.
        """
        params: dict[str, str] = {}
        if prefix:
            params["prefix"] = prefix
        if limit is not None:
            params["limit"] = str(limit)
        if cursor:
            params["cursor"] = cursor

        async def operation() -> httpx.Response:
            return await self._send("GET", "/keys", params=params)

        response = await self._execute(operation)
        return response.json()

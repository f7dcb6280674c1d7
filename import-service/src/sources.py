# import-service/src/sources.py
"""Byte sources for import runs.

Both strategies expose ``chunks()`` (raw bytes) and ``text_chunks()``
(incrementally decoded UTF-8). Neither assumes chunk boundaries line up
with characters or lines.
"""
import abc
import asyncio
import codecs
import os
from contextlib import aclosing
from typing import AsyncIterator, Optional

import httpx

from errors import SourceUnavailable, TransientFetchError
from log import get_logger

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


class ByteSource(abc.ABC):
    bytes_received: int = 0

    @abc.abstractmethod
    def chunks(self) -> AsyncIterator[bytes]:  # pragma: no cover
        raise NotImplementedError

    async def text_chunks(self) -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
        chunks = self.chunks()
        async with aclosing(chunks):
            async for chunk in chunks:
                text = decoder.decode(chunk)
                if text:
                    yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail


# ---- remote streaming ----

class RemoteStreamSource(ByteSource):
    """Streams an HTTP GET body without buffering the whole payload."""

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient,
        estimated_total_bytes: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.url = url
        self.client = client
        self.estimated_total_bytes = estimated_total_bytes
        self.chunk_size = chunk_size
        self.bytes_received = 0

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            async with self.client.stream("GET", self.url) as response:
                if not response.is_success:
                    raise SourceUnavailable(
                        f"GET {self.url} returned {response.status_code} {response.reason_phrase}"
                    )
                length = response.headers.get("content-length")
                if length and length.isdigit() and int(length) > 0:
                    self.estimated_total_bytes = int(length)
                logger.info("download started url=%s estimated_bytes=%d", self.url, self.estimated_total_bytes)
                async for chunk in response.aiter_bytes(self.chunk_size):
                    self.bytes_received += len(chunk)
                    yield chunk
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"GET {self.url} failed: {e}") from e
        logger.info("download finished url=%s bytes=%d", self.url, self.bytes_received)


# ---- stored objects ----

class ObjectStore(abc.ABC):
    @abc.abstractmethod
    async def fetch(self, key: str) -> bytes:  # pragma: no cover
        """Return the whole object; raise TransientFetchError when a retry may help."""
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Objects are files under a base directory."""

    def __init__(self, base_dir: str):
        self.base_dir = os.path.abspath(base_dir)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.base_dir, key))
        if os.path.commonpath([self.base_dir, path]) != self.base_dir:
            raise SourceUnavailable(f"object key escapes the store: {key}")
        return path

    async def fetch(self, key: str) -> bytes:
        path = self._path(key)
        if not os.path.exists(path):
            raise SourceUnavailable(f"object not found: {key}")
        try:
            return await asyncio.to_thread(_read_bytes, path)
        except OSError as e:
            raise TransientFetchError(f"read {key} failed: {e}") from e


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class HttpObjectStore(ObjectStore):
    def __init__(self, base_url: str, client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self.client = client

    async def fetch(self, key: str) -> bytes:
        url = f"{self.base_url}/{key.lstrip('/')}"
        try:
            response = await self.client.get(url)
        except httpx.TransportError as e:
            raise TransientFetchError(f"GET {url} failed: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientFetchError(f"GET {url} returned {response.status_code}")
        if not response.is_success:
            raise SourceUnavailable(f"GET {url} returned {response.status_code}")
        return response.content


class StoredObjectSource(ByteSource):
    """Fetches a bounded object in full, then hands it out in chunks."""

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.store = store
        self.key = key
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds
        self.chunk_size = chunk_size
        self.bytes_received = 0
        self.payload: Optional[bytes] = None
        self.total_rows: Optional[int] = None

    async def fetch(self) -> bytes:
        if self.payload is not None:
            return self.payload
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                self.payload = await self.store.fetch(self.key)
                self.bytes_received = len(self.payload)
                logger.info("object fetched key=%s bytes=%d attempt=%d", self.key, self.bytes_received, attempt)
                return self.payload
            except TransientFetchError as e:
                last_error = e
                logger.warning("object fetch failed key=%s attempt=%d/%d: %s", self.key, attempt, self.retries, e)
                if attempt < self.retries:
                    await asyncio.sleep(attempt * self.backoff_seconds)
        raise SourceUnavailable(f"object {self.key} unavailable after {self.retries} attempts: {last_error}")

    async def chunks(self) -> AsyncIterator[bytes]:
        payload = await self.fetch()
        for start in range(0, len(payload), self.chunk_size):
            yield payload[start:start + self.chunk_size]

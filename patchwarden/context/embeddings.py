"""Embedding generation over an Ollama-compatible HTTP service."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from typing import Protocol

import httpx
import numpy as np

from patchwarden.context.chunker import measure, truncate
from patchwarden.core.config import Settings, get_settings
from patchwarden.core.errors import ErrorCode, TransientServiceError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+|[^\sA-Za-z0-9_]")


class Embedder(Protocol):
    """Text → fixed-dimension vector."""

    async def embed(self, text: str) -> list[float]: ...


class EmbeddingGateway:
    """Generate embeddings through an Ollama ``/api/embeddings`` endpoint.

    Failures (timeouts, connection errors, 5xx, malformed bodies) surface
    as :class:`TransientServiceError` after one retry. Callers treat the
    affected chunk as absent and carry on.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.host = settings.embedding_base_url.rstrip("/")
        self.model = settings.embedding_model
        self.dimension = settings.embedding_dimension
        self.max_input = settings.embedding_max_input
        self._timeout = settings.embedding_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_loop_id: int | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create an httpx client bound to the running event loop."""
        loop_id = id(asyncio.get_running_loop())
        if self._client is None or self._client_loop_id != loop_id:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
            self._client_loop_id = loop_id
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._client_loop_id = None

    async def embed(self, text: str) -> list[float]:
        """Embed ``text``, retrying once on a transient failure.

        Raises:
            TransientServiceError: the service failed twice or returned an
                unusable body.
        """
        if measure(text) > self.max_input:
            logger.debug("Truncating embedding input from %d to %d", measure(text), self.max_input)
            text = truncate(text, self.max_input)

        try:
            return await self._embed_once(text)
        except TransientServiceError as e:
            logger.warning("Embedding request failed, retrying once: %s", e)
            return await self._embed_once(text)

    async def _embed_once(self, text: str) -> list[float]:
        client = self._get_client()
        try:
            response = await client.post(
                f"{self.host}/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise TransientServiceError(
                f"Embedding request timed out: {e}", code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            ) from e
        except httpx.HTTPStatusError as e:
            raise TransientServiceError(
                f"Embedding service returned {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransientServiceError(f"Embedding request failed: {e}") from e

        vector = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(vector, list) or not vector:
            raise TransientServiceError("Embedding response has no 'embedding' field")
        if self.dimension and len(vector) != self.dimension:
            raise TransientServiceError(
                f"Embedding dimension {len(vector)} != configured {self.dimension}",
                details={"dimension": len(vector)},
            )
        return [float(v) for v in vector]


class HashingEmbedder:
    """Deterministic feature-hashing embedder for offline runs and tests.

    Tokens are hashed into ``dimension`` signed buckets and the result is
    L2-normalized, so texts sharing identifiers land close together.
    """

    def __init__(self, dimension: int = 256) -> None:
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode(), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm == 0:
            return vector.tolist()
        return (vector / norm).tolist()

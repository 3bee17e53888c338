"""Embedding provider clients.

Uses raw ``requests`` (NOT the OpenAI SDK) to call an OpenAI-compatible
``/v1/embeddings`` endpoint.  Two interchangeable backends:

* ``GatewayEmbeddings`` -- local inference gateway (e.g. Ollama), no auth
* ``HostedEmbeddings``  -- hosted API with a bearer token

Both are async-friendly (``asyncio.to_thread`` around blocking requests) and
honor a per-call timeout.  Every transport, timeout or payload problem is
raised as :class:`EmbeddingError`; callers decide whether to degrade.
Retries are left to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
import requests

from .config import (
    ConfigError,
    GatewayProviderConfig,
    HostedProviderConfig,
    ProviderConfig,
)

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when an embedding call fails (network, timeout, bad payload)."""


@dataclass
class Embedding:
    """A single embedding vector together with its provenance."""

    vector: np.ndarray
    dims: int
    model: str


class EmbeddingProvider:
    """Base class for ``/v1/embeddings`` backends."""

    name = "base"

    def __init__(self, base_url: str, model: str, timeout: float = 3.0) -> None:
        self.base_url: str = base_url.rstrip("/")
        self.model: str = model
        self.timeout: float = timeout
        self._url = f"{self.base_url}/v1/embeddings"

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    # ------------------------------------------------------------------
    # Low-level HTTP call
    # ------------------------------------------------------------------

    def _call_api(self, text: str, model: str, timeout: float) -> Embedding:
        """Blocking HTTP POST; returns the first embedding of the response."""
        payload = {"model": model, "input": text}
        try:
            resp = requests.post(
                self._url,
                headers=self._headers(),
                json=payload,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise EmbeddingError(f"{self.name} embeddings request failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise EmbeddingError(
                f"{self.name} embeddings failed: HTTP {resp.status_code} {resp.text[:200]}"
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise EmbeddingError(f"{self.name} embeddings: response is not JSON") from exc

        return _parse_embedding(data, model, self.name)

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Embedding:
        """Embed a single text. Raises EmbeddingError on any failure."""
        model = model or self.model
        timeout = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._call_api, text, model, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingError(
                f"{self.name} embeddings timed out after {timeout:.2f}s"
            ) from exc


class GatewayEmbeddings(EmbeddingProvider):
    """Local OpenAI-compatible gateway (no credentials)."""

    name = "gateway"

    @classmethod
    def from_config(cls, cfg: GatewayProviderConfig) -> "GatewayEmbeddings":
        return cls(base_url=cfg.base_url, model=cfg.model, timeout=cfg.timeout)


class HostedEmbeddings(EmbeddingProvider):
    """Hosted embeddings API using ``Authorization: Bearer``."""

    name = "hosted"

    def __init__(self, api_key: str, base_url: str, model: str, timeout: float = 3.0) -> None:
        if not api_key:
            raise ConfigError("hosted embeddings: missing API key")
        super().__init__(base_url=base_url, model=model, timeout=timeout)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    @classmethod
    def from_config(cls, cfg: HostedProviderConfig) -> "HostedEmbeddings":
        return cls(api_key=cfg.api_key, base_url=cfg.base_url, model=cfg.model, timeout=cfg.timeout)


def create_provider(cfg: ProviderConfig) -> EmbeddingProvider:
    """Instantiate the backend selected by a tagged provider config."""
    if isinstance(cfg, GatewayProviderConfig):
        return GatewayEmbeddings.from_config(cfg)
    if isinstance(cfg, HostedProviderConfig):
        return HostedEmbeddings.from_config(cfg)
    raise ConfigError(f"unsupported provider config: {cfg!r}")


def _parse_embedding(data: Any, model: str, backend: str) -> Embedding:
    """Extract ``data[0].embedding`` from an OpenAI-compatible response."""
    try:
        raw = data["data"][0]["embedding"]
    except (KeyError, IndexError, TypeError) as exc:
        raise EmbeddingError(f"{backend} embeddings: missing data[0].embedding") from exc

    if not isinstance(raw, list) or not raw:
        raise EmbeddingError(f"{backend} embeddings: data[0].embedding is not a non-empty list")

    try:
        vec = np.asarray(raw, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise EmbeddingError(f"{backend} embeddings: non-numeric embedding values") from exc

    if vec.ndim != 1:
        raise EmbeddingError(f"{backend} embeddings: expected a flat vector")

    return Embedding(vector=vec, dims=int(vec.size), model=model)

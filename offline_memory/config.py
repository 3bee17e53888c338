"""Configuration for the offline memory store.

Loads from environment variables with sensible defaults.
Optionally reads a config.json file.

Note:
    Environment variables use the ``OFFLINE_MEMORY_*`` prefix, except for the
    hosted embedding credentials which reuse the usual ``OPENAI_*`` names.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "http://127.0.0.1:11434"
DEFAULT_GATEWAY_MODEL = "bge-m3"
DEFAULT_HOSTED_URL = "https://api.openai.com"
DEFAULT_HOSTED_MODEL = "text-embedding-3-small"


class ConfigError(Exception):
    """Raised when configuration is missing or inconsistent."""


# ---------------------------------------------------------------------------
# Embedding provider selection (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayProviderConfig:
    """Local OpenAI-compatible inference gateway (no credentials)."""

    base_url: str = DEFAULT_GATEWAY_URL
    model: str = DEFAULT_GATEWAY_MODEL
    timeout: float = 3.0
    kind: Literal["gateway"] = "gateway"


@dataclass(frozen=True)
class HostedProviderConfig:
    """Hosted embeddings API authenticated with a bearer token."""

    api_key: str
    base_url: str = DEFAULT_HOSTED_URL
    model: str = DEFAULT_HOSTED_MODEL
    timeout: float = 3.0
    kind: Literal["hosted"] = "hosted"

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigError("hosted embeddings: missing API key (set OPENAI_API_KEY)")


ProviderConfig = Union[GatewayProviderConfig, HostedProviderConfig]


@dataclass
class Config:
    """Central configuration for the store, retriever and API."""

    # Storage
    db_path: str = ""  # resolved in load_config()

    # Embeddings
    embedding_provider: str = "gateway"  # gateway | hosted
    embedding_model: str = ""  # empty -> backend default
    gateway_base_url: str = DEFAULT_GATEWAY_URL
    hosted_base_url: str = DEFAULT_HOSTED_URL
    hosted_api_key: str = ""
    embedding_timeout: float = 3.0
    embedding_storage: str = "float16"  # float16 | float32

    # Hybrid search
    semantic_weight: float = 0.7
    candidate_pool: int = 50
    embed_concurrency: int = 1

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8787
    api_key: str = ""

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty == OK)."""
        errors: list[str] = []
        if self.embedding_provider not in ("gateway", "hosted"):
            errors.append("OFFLINE_MEMORY_PROVIDER must be 'gateway' or 'hosted'")
        if self.embedding_provider == "hosted" and not self.hosted_api_key:
            errors.append("OPENAI_API_KEY is required for the hosted provider")
        if self.embedding_storage not in ("float16", "float32"):
            errors.append("OFFLINE_MEMORY_EMBED_STORAGE must be 'float16' or 'float32'")
        if not 0.0 <= self.semantic_weight <= 1.0:
            errors.append("OFFLINE_MEMORY_SEMANTIC_WEIGHT must be within [0, 1]")
        if self.embedding_timeout <= 0:
            errors.append("OFFLINE_MEMORY_EMBED_TIMEOUT must be > 0")
        if self.candidate_pool < 1:
            errors.append("OFFLINE_MEMORY_CANDIDATES must be >= 1")
        if self.embed_concurrency < 1:
            errors.append("OFFLINE_MEMORY_EMBED_CONCURRENCY must be >= 1")
        if self.api_port < 1 or self.api_port > 65535:
            errors.append("OFFLINE_MEMORY_PORT must be 1-65535")
        return errors

    def provider_config(self) -> ProviderConfig:
        """Build the tagged provider config for the selected backend.

        Raises ConfigError for an unknown provider or a hosted backend
        without credentials.
        """
        if self.embedding_provider == "gateway":
            return GatewayProviderConfig(
                base_url=self.gateway_base_url,
                model=self.embedding_model or DEFAULT_GATEWAY_MODEL,
                timeout=self.embedding_timeout,
            )
        if self.embedding_provider == "hosted":
            return HostedProviderConfig(
                api_key=self.hosted_api_key,
                base_url=self.hosted_base_url,
                model=self.embedding_model or DEFAULT_HOSTED_MODEL,
                timeout=self.embedding_timeout,
            )
        raise ConfigError(f"unknown embedding provider {self.embedding_provider!r}")


def load_config(config_path: Optional[str] = None) -> Config:
    """Build a Config from environment variables, optionally overlaid with a JSON file.

    Environment variables (all optional):
        OFFLINE_MEMORY_CONFIG
        OFFLINE_MEMORY_DB
        OFFLINE_MEMORY_PROVIDER
        OFFLINE_MEMORY_MODEL
        OFFLINE_MEMORY_GATEWAY_URL
        OPENAI_BASE_URL
        OPENAI_API_KEY
        OFFLINE_MEMORY_EMBED_TIMEOUT
        OFFLINE_MEMORY_EMBED_STORAGE
        OFFLINE_MEMORY_SEMANTIC_WEIGHT
        OFFLINE_MEMORY_CANDIDATES
        OFFLINE_MEMORY_EMBED_CONCURRENCY
        OFFLINE_MEMORY_HOST
        OFFLINE_MEMORY_PORT
        OFFLINE_MEMORY_API_KEY
    """
    cfg = Config()

    # --- JSON file overlay ------------------------------------------------
    json_path = config_path or os.environ.get("OFFLINE_MEMORY_CONFIG")
    if json_path and Path(json_path).is_file():
        with open(json_path, "r") as fh:
            data = json.load(fh)
        for key, val in data.items():
            if hasattr(cfg, key):
                expected_type = type(getattr(cfg, key))
                try:
                    setattr(cfg, key, expected_type(val))
                except (ValueError, TypeError):
                    logger.warning("Ignoring bad config value %s=%r in %s", key, val, json_path)

    # --- Environment variable overlay -------------------------------------
    env_map: dict[str, tuple[str, type]] = {
        "OFFLINE_MEMORY_DB": ("db_path", str),
        "OFFLINE_MEMORY_PROVIDER": ("embedding_provider", str),
        "OFFLINE_MEMORY_MODEL": ("embedding_model", str),
        "OFFLINE_MEMORY_GATEWAY_URL": ("gateway_base_url", str),
        "OPENAI_BASE_URL": ("hosted_base_url", str),
        "OPENAI_API_KEY": ("hosted_api_key", str),
        "OFFLINE_MEMORY_EMBED_TIMEOUT": ("embedding_timeout", float),
        "OFFLINE_MEMORY_EMBED_STORAGE": ("embedding_storage", str),
        "OFFLINE_MEMORY_SEMANTIC_WEIGHT": ("semantic_weight", float),
        "OFFLINE_MEMORY_CANDIDATES": ("candidate_pool", int),
        "OFFLINE_MEMORY_EMBED_CONCURRENCY": ("embed_concurrency", int),
        "OFFLINE_MEMORY_HOST": ("api_host", str),
        "OFFLINE_MEMORY_PORT": ("api_port", int),
        "OFFLINE_MEMORY_API_KEY": ("api_key", str),
    }

    for env_key, (attr, cast) in env_map.items():
        val = os.environ.get(env_key)
        if val is not None:
            try:
                setattr(cfg, attr, cast(val))
            except (ValueError, TypeError):
                logger.warning("Ignoring bad environment value %s=%r", env_key, val)

    # --- Default db_path resolution ---------------------------------------
    if not cfg.db_path:
        cfg.db_path = str(Path.home() / ".offline-memory" / "memory.sqlite")

    return cfg

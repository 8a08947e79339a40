"""Embedding provider: protocol plus a LiteLLM-backed implementation.

The engine never computes embeddings itself. Every vector comes from an
``EmbeddingProvider``; when the provider is not ready (still loading, missing
API key, remote failure) ``embed()`` returns None and callers degrade to
keyword-only retrieval instead of failing.
"""

from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol, runtime_checkable

import litellm
import structlog

from recall.ingest.base import estimate_tokens

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

logger = structlog.get_logger()


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "huggingface": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


@runtime_checkable
class EmbeddingProvider(Protocol):
    """What the engine needs from an embedding backend."""

    def embed(self, text: str) -> list[float] | None: ...

    def is_ready(self) -> bool: ...

    def estimate_tokens(self, text: str) -> int: ...


class LiteLLMEmbeddingProvider:
    """Embed text through ``litellm.embedding()``.

    The provider starts not ready. ``load()`` validates the API key and sends
    a probe request to learn the vector dimension; only then does ``embed()``
    return vectors.

    Args:
        model:       LiteLLM embedding model string (provider/model format).
        dimensions:  Requested output dimension, for models that support it.
        num_retries: Retries on transient errors (LiteLLM exponential backoff).
    """

    def __init__(
        self,
        model: str = "openai/text-embedding-3-small",
        dimensions: int | None = None,
        num_retries: int = 3,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.num_retries = num_retries
        self._ready = threading.Event()
        self._executor: ThreadPoolExecutor | None = None

    def load(self) -> int:
        """Validate credentials and probe the model. Returns the vector dimension.

        Raises:
            EnvironmentError: If the provider's API key is not set.
            Exception: Whatever LiteLLM raises for the probe request.
        """
        validate_api_key(self.model)
        vector = self._request("ready")
        self.dimensions = len(vector)
        self._ready.set()
        logger.info("embedding.ready", model=self.model, dimension=self.dimensions)
        return self.dimensions

    def load_in_background(self) -> Future[int]:
        """Run ``load()`` on a worker thread. Failures are logged, never raised here."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedding-load")
        future = self._executor.submit(self.load)
        future.add_done_callback(self._log_load_failure)
        return future

    def _log_load_failure(self, future: Future[int]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("embedding.load_failed", model=self.model, error=str(exc))

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def embed(self, text: str) -> list[float] | None:
        """Return the embedding of *text*, or None if unavailable."""
        if not self.is_ready():
            logger.debug("embedding.not_ready", model=self.model)
            return None
        try:
            return self._request(text)
        except Exception as exc:
            logger.warning("embedding.failed", model=self.model, error=str(exc))
            return None

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    def _request(self, text: str) -> list[float]:
        kwargs: dict[str, object] = {"num_retries": self.num_retries}
        if self.dimensions is not None:
            kwargs["dimensions"] = self.dimensions
        response = litellm.embedding(model=self.model, input=[text], **kwargs)
        return [float(v) for v in response.data[0]["embedding"]]

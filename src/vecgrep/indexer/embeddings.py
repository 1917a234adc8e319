"""Embedding engines and batched embedding with retries."""

import hashlib
import logging
import math
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import nullcontext

import httpx
import numpy as np

from vecgrep.indexer.errors import (
    BatchEmbeddingError,
    EmbeddingError,
    EngineMismatchError,
    TransientEmbeddingError,
)
from vecgrep.indexer.models import EngineDescriptor

logger = logging.getLogger(__name__)

DEFAULT_ENGINE = "hashing"
DEFAULT_HASHING_DIMENSIONS = 512
DEFAULT_BATCH_SIZE = 32
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF = 0.5  # seconds, doubled per attempt

OPENAI_BASE_URL = "https://api.openai.com/v1"
OPENAI_TIMEOUT = 30.0  # seconds
OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingEngine(ABC):
    """
    Maps text to fixed-length float32 vectors.

    Engines are identified by name; every vector an engine returns has
    exactly `dimensions` components. Engines that cannot be called from
    several threads at once set thread_safe = False and the indexer
    serializes calls to them.
    """

    name: str
    dimensions: int
    thread_safe: bool = True

    @property
    def descriptor(self) -> EngineDescriptor:
        return EngineDescriptor(self.name, self.dimensions)

    def embed(self, text: str) -> np.ndarray:
        """Embed a single text."""
        return self.embed_batch([text])[0]

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """
        Embed several texts in one call.

        The result has one vector per input, in input order. Backends that
        know which inputs failed raise BatchEmbeddingError with the partial
        results; otherwise the whole call fails.
        """

    def close(self) -> None:
        """Release backend resources."""


# Splits identifiers into words: RefreshToken -> Refresh, Token; HTTPServer -> HTTP, Server
_WORD_PATTERN = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")


def tokenize(text: str) -> list[str]:
    """Lowercased word tokens, with camelCase and snake_case identifiers split."""
    return [word.lower() for word in _WORD_PATTERN.findall(text)]


class HashingEngine(EmbeddingEngine):
    """
    Deterministic local engine based on signed feature hashing.

    Each token is hashed into one of `dimensions` buckets with a +/-1 sign;
    token counts are damped with 1 + log(tf) and the vector is L2
    normalized, so cosine similarity measures weighted word overlap. Needs
    no model download and gives identical vectors across processes.
    """

    thread_safe = True

    def __init__(self, dimensions: int = DEFAULT_HASHING_DIMENSIONS, name: str = "hashing"):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self.name = name
        self.dimensions = dimensions

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for token, count in Counter(tokenize(text)).items():
            digest = int.from_bytes(
                hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "big"
            )
            bucket = digest % self.dimensions
            sign = 1.0 if (digest >> 63) & 1 else -1.0
            vector[bucket] += sign * (1.0 + math.log(count))
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        return [self._vector(text) for text in texts]


class SentenceTransformerEngine(EmbeddingEngine):
    """Local neural model through sentence-transformers."""

    thread_safe = False

    def __init__(self, model_name: str):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingError(
                "sentence-transformers is not installed; install vecgrep[local]"
            ) from e
        try:
            self._model = SentenceTransformer(model_name)
        except Exception as e:
            raise EmbeddingError(f"Cannot load model {model_name}: {e}") from e
        self.name = f"sentence-transformers:{model_name}"
        self.dimensions = int(self._model.get_sentence_embedding_dimension())

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        matrix = self._model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        return [np.asarray(row, dtype=np.float32) for row in matrix]


class OpenAIEngine(EmbeddingEngine):
    """OpenAI-compatible /embeddings endpoint over HTTP."""

    thread_safe = True

    def __init__(
        self,
        model: str,
        api_key: str | None,
        base_url: str = OPENAI_BASE_URL,
        dimensions: int | None = None,
        timeout: float = OPENAI_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        if not api_key:
            raise EmbeddingError("OPENAI_API_KEY must be set to use the openai engine")
        if dimensions is None:
            dimensions = OPENAI_DIMENSIONS.get(model)
        if dimensions is None:
            raise EmbeddingError(f"Unknown dimensions for model {model}; set VECGREP_DIMENSIONS")

        self.name = f"openai:{model}"
        self.model = model
        self.dimensions = dimensions
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        payload: dict = {"model": self.model, "input": texts}
        if self.model not in OPENAI_DIMENSIONS or self.dimensions != OPENAI_DIMENSIONS[self.model]:
            payload["dimensions"] = self.dimensions

        try:
            response = self._client.post("/embeddings", json=payload)
        except httpx.TransportError as e:
            raise TransientEmbeddingError(f"Embedding request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientEmbeddingError(f"HTTP {response.status_code}: {response.text[:200]}")
        if response.status_code >= 400:
            raise EmbeddingError(f"HTTP {response.status_code}: {response.text[:200]}")

        data = sorted(response.json()["data"], key=lambda item: item["index"])
        if len(data) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(data)}")
        return [np.asarray(item["embedding"], dtype=np.float32) for item in data]

    def close(self) -> None:
        self._client.close()


def create_engine(
    name: str,
    dimensions: int | None = None,
    openai_api_key: str | None = None,
    openai_base_url: str = OPENAI_BASE_URL,
) -> EmbeddingEngine:
    """
    Build an engine from its identifier.

    Identifiers: "hashing", "sentence-transformers:<model>",
    "openai:<model>".

    Raises:
        ValueError: Unknown engine identifier.
        EmbeddingError: The backend cannot be initialized.
    """
    kind, _, model = name.partition(":")
    if kind == "hashing":
        return HashingEngine(dimensions or DEFAULT_HASHING_DIMENSIONS)
    if kind == "sentence-transformers" and model:
        return SentenceTransformerEngine(model)
    if kind == "openai" and model:
        return OpenAIEngine(
            model,
            api_key=openai_api_key,
            base_url=openai_base_url,
            dimensions=dimensions,
        )
    raise ValueError(f"Unknown embedding engine '{name}'")


def _is_transient_embedding(error: Exception) -> bool:
    return isinstance(error, TransientEmbeddingError)


def call_with_retry(call, max_retries: int, backoff: float, is_transient=_is_transient_embedding):
    """
    Call with exponential backoff while it fails transiently.

    Args:
        call: Zero-argument callable
        max_retries: Retries after the first attempt
        backoff: Initial delay in seconds, doubled per attempt
        is_transient: Predicate deciding whether an exception is retryable
    """
    for attempt in range(max_retries + 1):
        try:
            return call()
        except Exception as e:
            if not is_transient(e) or attempt == max_retries:
                raise
            delay = backoff * (2**attempt)
            logger.warning(
                "Transient error (attempt %d/%d), retrying in %.1fs: %s",
                attempt + 1,
                max_retries + 1,
                delay,
                e,
            )
            time.sleep(delay)


class BatchEmbedder:
    """
    Embeds lists of texts in batches against one engine.

    Transient failures are retried with exponential backoff. When a batch
    partially succeeds only the failed inputs are retried; when a batch
    fails outright it is split in half and each half retried, down to
    single texts. A single text that still fails raises EmbeddingError.
    """

    def __init__(
        self,
        engine: EmbeddingEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff: float = DEFAULT_BACKOFF,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.engine = engine
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff = backoff
        self._lock = nullcontext() if engine.thread_safe else threading.Lock()

    def embed(self, texts: list[str]) -> list[np.ndarray]:
        """Embed texts, returning one vector per text in input order."""
        out: list[np.ndarray | None] = [None] * len(texts)
        for start in range(0, len(texts), self.batch_size):
            indices = list(range(start, min(len(texts), start + self.batch_size)))
            self._embed_indices(texts, indices, out)
        return out  # type: ignore[return-value]

    def _engine_call(self, batch: list[str]) -> list[np.ndarray]:
        with self._lock:
            return self.engine.embed_batch(batch)

    def _embed_indices(
        self,
        texts: list[str],
        indices: list[int],
        out: list[np.ndarray | None],
    ) -> None:
        batch = [texts[i] for i in indices]
        try:
            vectors = call_with_retry(
                lambda: self._engine_call(batch), self.max_retries, self.backoff
            )
        except BatchEmbeddingError as e:
            if len(indices) == 1:
                raise
            for position, vector in e.partial.items():
                out[indices[position]] = self._check(vector)
            failed = [indices[position] for position in e.failed]
            logger.warning("Retrying %d failed inputs of a batch of %d", len(failed), len(indices))
            for index in failed:
                self._embed_indices(texts, [index], out)
            return
        except TransientEmbeddingError:
            raise
        except EmbeddingError as e:
            if len(indices) == 1:
                raise
            middle = len(indices) // 2
            logger.warning(
                "Batch of %d failed, retrying as %d + %d: %s",
                len(indices),
                middle,
                len(indices) - middle,
                e,
            )
            self._embed_indices(texts, indices[:middle], out)
            self._embed_indices(texts, indices[middle:], out)
            return

        if len(vectors) != len(indices):
            raise EmbeddingError(
                f"Engine {self.engine.name} returned {len(vectors)} vectors for {len(indices)} texts"
            )
        for index, vector in zip(indices, vectors):
            out[index] = self._check(vector)

    def _check(self, vector) -> np.ndarray:
        vector = np.asarray(vector, dtype=np.float32)
        if vector.shape != (self.engine.dimensions,):
            raise EngineMismatchError(
                f"Engine {self.engine.name} returned shape {vector.shape}, "
                f"expected ({self.engine.dimensions},)"
            )
        return vector

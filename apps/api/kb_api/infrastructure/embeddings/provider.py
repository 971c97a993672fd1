"""
Local sentence-embedding provider used by the knowledge-base ingestion.

The model is loaded once per process on first use. Batches are split into
fixed-size chunks; a chunk whose output does not line up with its input is
re-embedded one text at a time, and a batch call that raises degrades the
whole request to per-text embedding.
"""

import logging
import os
import threading
from typing import Any, Callable, List, Optional, Protocol, Sequence, Union

import numpy as np

from kb_api.core.domain.errors import EmbeddingGenerationError, EmbeddingModelLoadError

logger = logging.getLogger(__name__)

EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
EMBEDDING_DEVICE = os.environ.get("EMBEDDING_DEVICE") or None
EMBEDDING_DIMENSION = int(os.environ.get("EMBEDDING_DIMENSION", "384"))
EMBEDDING_CHUNK_SIZE = int(os.environ.get("EMBEDDING_CHUNK_SIZE", "100"))


class Encoder(Protocol):
    def encode(self, sentences: Union[str, List[str]], **kwargs: Any) -> Any:
        ...


ModelFactory = Callable[[str], Encoder]


def load_sentence_transformer(model_name: str) -> Encoder:
    try:
        from sentence_transformers import SentenceTransformer
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "sentence-transformers is required for local embeddings. "
            "Install it with `pip install sentence-transformers`."
        ) from exc

    return SentenceTransformer(model_name, device=EMBEDDING_DEVICE)


def _as_matrix(output: Any) -> Optional[np.ndarray]:
    try:
        return np.asarray(output, dtype=float)
    except (TypeError, ValueError):
        return None


class EmbeddingProvider:
    def __init__(
        self,
        model_name: str = EMBEDDING_MODEL,
        *,
        model_factory: Optional[ModelFactory] = None,
        dimension: int = EMBEDDING_DIMENSION,
        chunk_size: int = EMBEDDING_CHUNK_SIZE,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.model_name = model_name
        self.dimension = dimension
        self.chunk_size = chunk_size
        self._model_factory = model_factory or load_sentence_transformer
        self._model: Optional[Encoder] = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def initialize(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            logger.info("Loading embedding model %s", self.model_name)
            try:
                self._model = self._model_factory(self.model_name)
            except Exception as exc:
                logger.exception("Could not load embedding model %s", self.model_name)
                raise EmbeddingModelLoadError(
                    f"Failed to load embedding model {self.model_name}: {exc}"
                ) from exc
            logger.info("Embedding model %s loaded", self.model_name)

    def _encode(self, inputs: Union[str, List[str]]) -> Any:
        if self._model is None:
            raise EmbeddingModelLoadError(f"Embedding model {self.model_name} is not loaded")
        # Pooling comes from the model config (mean pooling for MiniLM).
        return self._model.encode(
            inputs,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )

    def _check_dimension(self, size: int) -> None:
        if size != self.dimension:
            logger.warning("Expected %s embedding dimensions, got %s", self.dimension, size)

    def embed(self, text: str) -> List[float]:
        self.initialize()
        try:
            output = self._encode(text)
            vector = np.asarray(output, dtype=float).reshape(-1)
        except Exception as exc:
            raise EmbeddingGenerationError(f"Failed to generate embeddings: {exc}") from exc
        self._check_dimension(vector.shape[0])
        return vector.tolist()

    def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed texts in chunks, returning exactly one vector per input, in order.
        """
        texts = list(texts)
        if not texts:
            return []
        self.initialize()

        vectors: List[List[float]] = []
        for chunk_number, start in enumerate(range(0, len(texts), self.chunk_size), start=1):
            chunk = texts[start : start + self.chunk_size]
            try:
                output = self._encode(chunk)
            except Exception as exc:
                logger.warning(
                    "Batch embedding failed on chunk %s (%s); embedding all %s texts individually",
                    chunk_number,
                    exc,
                    len(texts),
                )
                return [self.embed(text) for text in texts]

            matrix = _as_matrix(output)
            if matrix is None or matrix.ndim != 2 or matrix.shape[0] != len(chunk):
                shape = None if matrix is None else matrix.shape
                logger.warning(
                    "Chunk %s returned shape %s for %s texts; falling back to individual processing",
                    chunk_number,
                    shape,
                    len(chunk),
                )
                vectors.extend(self.embed(text) for text in chunk)
                continue

            self._check_dimension(matrix.shape[1])
            vectors.extend(row.tolist() for row in matrix)

        return vectors

    @staticmethod
    def format_for_storage(vector: Sequence[float]) -> str:
        # pgvector literal: '[0.1,0.2,0.3]'
        return "[" + ",".join(str(x) for x in vector) + "]"


_provider: Optional[EmbeddingProvider] = None
_provider_lock = threading.Lock()


def get_embedding_provider() -> EmbeddingProvider:
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                _provider = EmbeddingProvider()
    return _provider

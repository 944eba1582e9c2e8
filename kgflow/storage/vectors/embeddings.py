"""
Sentence-Transformers Embedding Provider
========================================

Local embedding provider backed by sentence-transformers.

Key Features:
- Lazy loading (model loaded on first use, not on import)
- Optional query/passage prefixes (E5-style models require them)
- Batch encoding in a thread pool so the event loop is never blocked
- Thread-safe initialization

Install with: pip install kgflow[embeddings]
"""

import asyncio
import logging
import os
from threading import Lock
from typing import List, Optional

try:
    from sentence_transformers import SentenceTransformer
    import torch
except ImportError:
    raise ImportError(
        "sentence-transformers and torch are required for SentenceTransformerEmbedder. "
        "Install with: pip install kgflow[embeddings]"
    )

logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """
    Embedding provider for the vector search and generate_embeddings steps.

    Usage:
        embedder = SentenceTransformerEmbedder("intfloat/multilingual-e5-large",
                                               query_prefix="query: ",
                                               document_prefix="passage: ")
        vectors = await embedder.embed(["def parse(): ..."])
        query = await embedder.embed(["how is input parsed?"], is_query=True)
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        device: Optional[str] = None,
        batch_size: int = 32,
        normalize_embeddings: bool = True,
        query_prefix: str = "",
        document_prefix: str = "",
    ):
        """
        Args:
            model_name: Sentence-transformers model name
                        (default: EMBEDDING_MODEL env var or all-MiniLM-L6-v2)
            device: 'cpu', 'cuda', or None for auto-detect
            batch_size: Encoding batch size
            normalize_embeddings: Normalize vectors (for cosine similarity)
            query_prefix: Prefix prepended to query texts
            document_prefix: Prefix prepended to document texts
        """
        self.model_name = (
            model_name or
            os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
        )
        self.device = (
            device or
            os.getenv("EMBEDDING_DEVICE", "cuda" if torch.cuda.is_available() else "cpu")
        )
        self.batch_size = int(os.getenv("EMBEDDING_BATCH_SIZE", str(batch_size)))
        self.normalize_embeddings = normalize_embeddings
        self.query_prefix = query_prefix
        self.document_prefix = document_prefix

        self._model: Optional[SentenceTransformer] = None
        self._lock = Lock()

        logger.info(
            f"SentenceTransformerEmbedder configured: model={self.model_name}, "
            f"device={self.device}, batch_size={self.batch_size}"
        )

    def _load_model(self) -> SentenceTransformer:
        """Lazy load the model (downloads it if not cached)."""
        if self._model is None:
            with self._lock:
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.model_name} on device: {self.device}")
                    try:
                        self._model = SentenceTransformer(self.model_name, device=self.device)
                    except Exception as e:
                        logger.error(f"Failed to load model: {e}", exc_info=True)
                        raise RuntimeError(f"Failed to load embedding model: {e}")
                    logger.info(
                        f"Model loaded. Embedding dimension: "
                        f"{self._model.get_sentence_embedding_dimension()}"
                    )
        return self._model

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    @property
    def dimension(self) -> int:
        return self._load_model().get_sentence_embedding_dimension()

    def encode_batch(self, texts: List[str], is_query: bool = False) -> List[List[float]]:
        """
        Encode texts synchronously.

        Args:
            texts: Texts to encode
            is_query: Use the query prefix instead of the document prefix

        Returns:
            One embedding vector per input text
        """
        if not texts:
            return []

        model = self._load_model()
        prefix = self.query_prefix if is_query else self.document_prefix
        prefixed = [f"{prefix}{text}" for text in texts]

        logger.debug(f"Batch encoding {len(texts)} {'queries' if is_query else 'documents'}")

        embeddings = model.encode(
            prefixed,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize_embeddings,
            convert_to_numpy=True,
        )
        return embeddings.tolist()

    async def embed(self, texts: List[str], is_query: bool = False) -> List[List[float]]:
        """Async wrapper for encode_batch (runs in the default thread pool)."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, lambda: self.encode_batch(texts, is_query))

    def __repr__(self) -> str:
        return (
            f"SentenceTransformerEmbedder("
            f"model={self.model_name}, "
            f"device={self.device}, "
            f"loaded={self.is_loaded})"
        )

import time
import structlog
from typing import Any, Dict, List, Optional

from fastembed import TextEmbedding

from content_pipeline.application.ports.embedding_model_port import EmbeddingModelPort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import EmbeddingError

log = structlog.get_logger(__name__)


class FastEmbedAdapter(EmbeddingModelPort):
    """
    Local ONNX embeddings through FastEmbed. Deterministic for a given model version.
    """
    _model: Optional[TextEmbedding] = None
    _model_loaded: bool = False
    _model_load_error: Optional[str] = None

    def __init__(self, model_name: Optional[str] = None, dimension: Optional[int] = None):
        self._model_name = model_name or settings.FASTEMBED_MODEL_NAME
        self._model_dimension = dimension or settings.EMBEDDING_DIMENSION
        log.info("FastEmbedAdapter initialized", configured_model_name=self._model_name,
                 expected_dimension=self._model_dimension)

    @property
    def dimension(self) -> int:
        return self._model_dimension

    def initialize_model(self) -> None:
        if self._model_loaded:
            log.debug("FastEmbed model already initialized.", model_name=self._model_name)
            return

        init_log = log.bind(adapter="FastEmbedAdapter", action="initialize_model", model_name=self._model_name)
        init_log.info("Initializing FastEmbed model...")
        start_time = time.perf_counter()
        try:
            self._model = TextEmbedding(
                model_name=self._model_name,
                cache_dir=settings.FASTEMBED_CACHE_DIR,
                threads=settings.FASTEMBED_THREADS,
            )
            test_embeddings_list = list(self._model.embed(["test vector"]))
            if not test_embeddings_list:
                raise ValueError("Test embedding with FastEmbed returned no result.")
            actual_dim = len(test_embeddings_list[0])
        except Exception as e:
            self._model_load_error = f"Failed to load FastEmbed model '{self._model_name}': {e}"
            init_log.critical(self._model_load_error, exc_info=True)
            self._model = None
            raise EmbeddingError(self._model_load_error) from e

        if actual_dim != self._model_dimension:
            self._model_load_error = (
                f"FastEmbed model dimension mismatch. EMBEDDING_DIMENSION is {self._model_dimension}, "
                f"but model '{self._model_name}' produced {actual_dim} dimensions."
            )
            init_log.critical(self._model_load_error)
            self._model = None
            raise EmbeddingError(self._model_load_error)

        self._model_loaded = True
        self._model_load_error = None
        init_log.info("FastEmbed model initialized and validated successfully.",
                      duration_ms=(time.perf_counter() - start_time) * 1000, actual_dimension=actual_dim)

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if not self._model_loaded or not self._model:
            log.error("FastEmbed model not loaded. Cannot generate embeddings.", model_error=self._model_load_error)
            raise EmbeddingError(f"FastEmbed model is not available. Load error: {self._model_load_error}")
        if not texts:
            return []

        embed_log = log.bind(adapter="FastEmbedAdapter", action="embed_texts", num_texts=len(texts))
        try:
            embeddings_list = [emb.tolist() for emb in self._model.embed(texts, batch_size=128)]
        except Exception as e:
            embed_log.exception("Error during FastEmbed embedding process")
            raise EmbeddingError(f"FastEmbed embedding generation failed: {e}") from e
        embed_log.debug("FastEmbed embeddings generated successfully.")
        return embeddings_list

    def get_model_info(self) -> Dict[str, Any]:
        return {"provider": "fastembed", "model_name": self._model_name, "dimension": self._model_dimension}

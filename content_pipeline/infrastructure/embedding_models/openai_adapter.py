import structlog
from typing import Any, Dict, List, Optional
from openai import OpenAI, APIConnectionError, APITimeoutError, RateLimitError, InternalServerError, OpenAIError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from content_pipeline.application.ports.embedding_model_port import EmbeddingModelPort
from content_pipeline.core.config import settings
from content_pipeline.core.exceptions import EmbeddingError, TerminalError

log = structlog.get_logger(__name__)


class OpenAIAdapter(EmbeddingModelPort):
    """
    Adapter for OpenAI's Embedding API.
    """
    _client: Optional[OpenAI] = None

    def __init__(self, model_name: Optional[str] = None, dimension: Optional[int] = None):
        self._model_name = model_name or settings.OPENAI_EMBEDDING_MODEL_NAME
        self._embedding_dimension = dimension or settings.EMBEDDING_DIMENSION
        log.info("OpenAIAdapter initialized", model_name=self._model_name, target_dimension=self._embedding_dimension)

    @property
    def dimension(self) -> int:
        return self._embedding_dimension

    def initialize_model(self) -> None:
        if self._client is not None:
            return
        if settings.OPENAI_API_KEY is None or not settings.OPENAI_API_KEY.get_secret_value():
            log.critical("OpenAI API Key is not configured.")
            raise EmbeddingError("OpenAI API Key is not configured.")
        self._client = OpenAI(
            api_key=settings.OPENAI_API_KEY.get_secret_value(),
            base_url=settings.OPENAI_API_BASE,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
            max_retries=0,
        )
        log.info("OpenAI client initialized successfully.", model_name=self._model_name)

    @retry(
        stop=stop_after_attempt(settings.OPENAI_MAX_RETRIES + 1),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((APIConnectionError, APITimeoutError, RateLimitError, InternalServerError)),
        before_sleep=lambda retry_state: log.warning(
            "Retrying OpenAI embedding call",
            attempt_number=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else "Unknown error"
        ),
        reraise=True,
    )
    def _create_embeddings(self, texts: List[str]):
        return self._client.embeddings.create(
            model=self._model_name,
            input=texts,
            encoding_format="float",
            dimensions=self._embedding_dimension,
        )

    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        if self._client is None:
            raise EmbeddingError("OpenAI embedding model is not available.")
        if not texts:
            return []

        embed_log = log.bind(adapter="OpenAIAdapter", num_texts=len(texts), model=self._model_name)
        try:
            response = self._create_embeddings(texts)
        except (APIConnectionError, APITimeoutError, RateLimitError, InternalServerError) as e:
            embed_log.error("OpenAI API unavailable", error=str(e))
            raise EmbeddingError(f"OpenAI API unavailable: {e}") from e
        except OpenAIError as e:
            embed_log.error(f"OpenAI API Error: {type(e).__name__}", error=str(e))
            raise TerminalError(f"OpenAI API error: {e}", reason="embedding_rejected") from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]

    def get_model_info(self) -> Dict[str, Any]:
        return {"provider": "openai", "model_name": self._model_name, "dimension": self._embedding_dimension}

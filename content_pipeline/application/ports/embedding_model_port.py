import abc
from typing import Any, Dict, List


class EmbeddingModelPort(abc.ABC):
    """
    Abstract port defining the interface for an embedding model.
    """

    @abc.abstractmethod
    def initialize_model(self) -> None:
        """Loads the model and validates its output dimension. Raises EmbeddingError."""
        raise NotImplementedError

    @abc.abstractmethod
    def embed_texts(self, texts: List[str]) -> List[List[float]]:
        """
        Generates embeddings for a list of texts.

        Args:
            texts: A list of strings to embed.

        Returns:
            One fixed-dimension vector per input text, in input order.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def dimension(self) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def get_model_info(self) -> Dict[str, Any]:
        """
        Returns information about the loaded embedding model.

        Returns:
            A dictionary containing model_name, dimension, etc.
        """
        raise NotImplementedError

from abc import ABC, abstractmethod
from typing import List


class ChunkingPort(ABC):
    """
    Interface (Port) for splitting one section of text into bounded chunks.
    """

    @abstractmethod
    def chunk_paragraphs(self, paragraphs: List[str], max_chunk_chars: int) -> List[str]:
        """
        Packs paragraphs into chunks of at most ``max_chunk_chars`` characters.

        Args:
            paragraphs: Whitespace-normalized paragraphs of a single section.
            max_chunk_chars: Upper bound for the length of each chunk.

        Returns:
            Non-empty chunk strings in reading order. Identical input yields identical output.

        Raises:
            ValueError: If ``max_chunk_chars`` is not positive.
        """
        pass

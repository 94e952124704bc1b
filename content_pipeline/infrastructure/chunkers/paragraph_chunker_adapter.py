import re
import unicodedata
import structlog
from typing import List

from content_pipeline.application.ports.chunking_port import ChunkingPort

log = structlog.get_logger(__name__)

PARAGRAPH_SEPARATOR = "\n\n"

# Sentence terminator, optionally followed by closing quotes/brackets, then whitespace
_SENTENCE_END = re.compile(r"[.!?…。！？][\"'”’)\]]*(?=\s)")


class ParagraphChunkerAdapter(ChunkingPort):
    """
    Character-bounded chunker that keeps paragraphs whole whenever they fit.

    Paragraphs are packed greedily into a chunk until the next one would exceed
    the limit. A paragraph longer than the limit is split at the last sentence
    end that fits, else at the last whitespace, else with a hard cut that never
    separates a base character from its combining marks.
    """

    def chunk_paragraphs(self, paragraphs: List[str], max_chunk_chars: int) -> List[str]:
        if max_chunk_chars <= 0:
            raise ValueError(f"Chunk size must be positive. Received: {max_chunk_chars}")

        chunks: List[str] = []
        current: List[str] = []
        current_len = 0

        for paragraph in paragraphs:
            if not paragraph or paragraph.isspace():
                continue
            pieces = [paragraph] if len(paragraph) <= max_chunk_chars else self._split_long(paragraph, max_chunk_chars)
            for piece in pieces:
                added = len(piece) + (len(PARAGRAPH_SEPARATOR) if current else 0)
                if current and current_len + added > max_chunk_chars:
                    chunks.append(PARAGRAPH_SEPARATOR.join(current))
                    current, current_len = [], 0
                    added = len(piece)
                current.append(piece)
                current_len += added

        if current:
            chunks.append(PARAGRAPH_SEPARATOR.join(current))

        log.debug("ParagraphChunkerAdapter: Section split into chunks",
                  num_paragraphs=len(paragraphs), num_chunks=len(chunks), max_chunk_chars=max_chunk_chars)
        return chunks

    def _split_long(self, text: str, limit: int) -> List[str]:
        pieces: List[str] = []
        rest = text
        while len(rest) > limit:
            cut = self._find_cut(rest, limit)
            head = rest[:cut].rstrip()
            if head:
                pieces.append(head)
            rest = rest[cut:].lstrip()
        if rest:
            pieces.append(rest)
        return pieces

    @staticmethod
    def _find_cut(text: str, limit: int) -> int:
        sentence_cut = 0
        for match in _SENTENCE_END.finditer(text, 0, limit + 1):
            if match.end() <= limit:
                sentence_cut = match.end()
        if sentence_cut > 0:
            return sentence_cut

        whitespace_cut = text.rfind(" ", 1, limit + 1)
        if whitespace_cut > 0:
            return whitespace_cut

        cut = limit
        while cut > 0 and unicodedata.combining(text[cut]):
            cut -= 1
        return cut if cut > 0 else limit

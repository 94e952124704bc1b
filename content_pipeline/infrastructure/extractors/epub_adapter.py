import os
import tempfile
from typing import Dict, List, Optional

import structlog
from bs4 import BeautifulSoup
from ebooklib import epub

from content_pipeline.domain.models import ExtractedSection
from content_pipeline.infrastructure.extractors.base_extractor import BaseExtractorAdapter, normalize_whitespace, split_paragraphs

log = structlog.get_logger(__name__)

_DROPPED_TAGS = ["script", "style", "noscript", "template", "svg", "math"]
_BLOCK_TAGS = [
    "p", "div", "section", "article", "aside", "header", "footer", "nav",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "dl", "dt", "dd",
    "blockquote", "pre", "figure", "figcaption",
    "table", "caption", "tr", "td", "th",
    "hr",
]
_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]


def html_to_paragraphs(markup: bytes) -> List[str]:
    """
    Strips markup from an XHTML content document.

    Block-level elements delimit paragraphs; inline markup is flattened into
    the surrounding text and whitespace is normalized.
    """
    soup = BeautifulSoup(markup, "html.parser")
    root = soup.body or soup
    for tag in root.find_all(_DROPPED_TAGS):
        tag.decompose()
    for br in root.find_all("br"):
        br.replace_with("\n")
    for tag in root.find_all(_BLOCK_TAGS):
        tag.insert_before("\n\n")
        tag.insert_after("\n\n")
    return split_paragraphs(root.get_text())


def _first_heading(markup: bytes) -> Optional[str]:
    soup = BeautifulSoup(markup, "html.parser")
    heading = soup.find(_HEADING_TAGS)
    if heading is None:
        return None
    return normalize_whitespace(heading.get_text()) or None


class EpubAdapter(BaseExtractorAdapter):
    """Adapter that walks an EPUB's spine in reading order using ebooklib."""

    def extract_sections(self, file_bytes: bytes, filename: str) -> List[ExtractedSection]:
        book = self._read_book(file_bytes, filename)
        toc_titles = self._collect_toc_titles(book.toc)

        sections: List[ExtractedSection] = []
        for position, entry in enumerate(book.spine):
            item_id, linear = entry if isinstance(entry, tuple) else (entry, "yes")
            if linear == "no":
                continue
            item = book.get_item_with_id(item_id)
            # Navigation documents are listed in the spine by some producers
            if not isinstance(item, epub.EpubHtml) or not item.is_chapter():
                continue

            href = item.get_name()
            markup = item.get_content()
            paragraphs = html_to_paragraphs(markup)
            title = toc_titles.get(href) or _first_heading(markup)
            sections.append(ExtractedSection(locator=f"{position}:{href}", title=title, paragraphs=paragraphs))
            log.debug("EpubAdapter: Extracted spine item", filename=filename, href=href, paragraphs=len(paragraphs))

        log.info("EpubAdapter: EPUB extraction successful", filename=filename,
                 sections=len(sections), toc_entries=len(toc_titles))
        return sections

    def _read_book(self, file_bytes: bytes, filename: str) -> epub.EpubBook:
        # ebooklib expects a path on disk
        with tempfile.NamedTemporaryFile(suffix=".epub", delete=False) as tmp:
            tmp.write(file_bytes)
            tmp_path = tmp.name
        try:
            return epub.read_epub(tmp_path, options={"ignore_ncx": False})
        except Exception as e:
            raise self._handle_extraction_error(e, filename, "EpubAdapter") from e
        finally:
            os.unlink(tmp_path)

    def _collect_toc_titles(self, toc) -> Dict[str, str]:
        """Maps content document names to the first table-of-contents title pointing at them."""
        titles: Dict[str, str] = {}

        def visit(entries):
            for entry in entries:
                if isinstance(entry, tuple):
                    section, children = entry
                    visit([section])
                    visit(children)
                    continue
                href = getattr(entry, "href", None) or getattr(entry, "file_name", None)
                title = getattr(entry, "title", None)
                if not href or not title:
                    continue
                name = href.split("#", 1)[0]
                titles.setdefault(name, normalize_whitespace(title))

        visit(toc or [])
        return titles

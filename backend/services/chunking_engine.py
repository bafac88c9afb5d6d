"""Chunking engine that splits Markdown documents into heading-bounded passages."""
import logging
import re
from dataclasses import dataclass
from typing import List

from models.document import Document
from models.chunk import Chunk
from config import MAX_CHUNK_CHARS, OVERLAP_CHARS, MIN_CHUNK_CHARS

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^#{1,3}\s+(.+)$")
PARAGRAPH_BREAK = re.compile(r"\n\n+")
SLUG_INVALID = re.compile(r"[^a-z0-9\u4e00-\u9fff:]+")


@dataclass
class Section:
    """A heading and the text under it."""
    heading: str
    content: str


def make_chunk_id(document_id: str, heading: str) -> str:
    """
    Build a stable chunk id from the document id and heading.

    Lower-cases ``"{document_id}::{heading}"``, replaces every run of
    characters outside ``[a-z0-9<CJK>:]`` with ``-`` and trims dashes.
    """
    slug = SLUG_INVALID.sub("-", f"{document_id}::{heading}".lower())
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


class ChunkingEngine:
    """Segments documents into retrievable chunks with heading context."""

    def __init__(
        self,
        max_chunk_chars: int = MAX_CHUNK_CHARS,
        overlap_chars: int = OVERLAP_CHARS,
        min_chunk_chars: int = MIN_CHUNK_CHARS
    ):
        """
        Initialize ChunkingEngine.

        Args:
            max_chunk_chars: Sections longer than this are split on paragraphs
            overlap_chars: Tail of the previous part carried into the next one
            min_chunk_chars: Passages shorter than this are dropped as noise
        """
        self.max_chunk_chars = max_chunk_chars
        self.overlap_chars = overlap_chars
        self.min_chunk_chars = min_chunk_chars

    def chunk_documents(self, documents: List[Document]) -> List[Chunk]:
        """
        Chunk every document.

        Args:
            documents: List of loaded documents

        Returns:
            All chunks, in document order
        """
        all_chunks = []
        for document in documents:
            all_chunks.extend(self.chunk_document(document))

        logger.info(f"Created {len(all_chunks)} chunks from {len(documents)} documents")
        return all_chunks

    def chunk_document(self, document: Document) -> List[Chunk]:
        """
        Split one document into heading-prefixed chunks.

        A document without headings yields a single chunk covering the body;
        an empty document yields none.
        """
        chunks = []

        for section in self.split_by_headings(document.content):
            for part in self.split_large_section(section):
                if len(part.content) < self.min_chunk_chars:
                    continue

                chunks.append(Chunk(
                    id=make_chunk_id(document.id, part.heading),
                    content=f"## {part.heading}\n\n{part.content}" if part.heading else part.content,
                    source=document.id,
                    section=part.heading or document.filename,
                    category=document.category,
                    tags=list(document.tags),
                ))

        logger.debug(f"Chunked {document.id} into {len(chunks)} chunks")
        return chunks

    @staticmethod
    def split_by_headings(markdown: str) -> List[Section]:
        """Split Markdown at level 1-3 headings; text before the first heading gets an empty heading."""
        sections = []
        current_heading = ""
        current_lines: List[str] = []

        def flush() -> None:
            text = "\n".join(current_lines).strip()
            if text:
                sections.append(Section(heading=current_heading, content=text))

        for line in markdown.replace("\r\n", "\n").split("\n"):
            match = HEADING_PATTERN.match(line)
            if match:
                flush()
                current_heading = match.group(1)
                current_lines = []
            else:
                current_lines.append(line)

        flush()
        return sections

    def split_large_section(self, section: Section) -> List[Section]:
        """
        Split a long section on paragraph boundaries.

        Each part after the first starts with the last ``overlap_chars``
        characters of the previous part, and parts are numbered
        "Heading (1)", "Heading (2)", ...
        """
        if len(section.content) <= self.max_chunk_chars:
            return [section]

        parts = []
        current = ""

        for paragraph in PARAGRAPH_BREAK.split(section.content):
            if current and len(current) + len(paragraph) > self.max_chunk_chars:
                parts.append(Section(
                    heading=f"{section.heading} ({len(parts) + 1})",
                    content=current.strip(),
                ))
                current = current[-self.overlap_chars:] + "\n\n" + paragraph
            else:
                current += ("\n\n" if current else "") + paragraph

        if current.strip():
            heading = f"{section.heading} ({len(parts) + 1})" if parts else section.heading
            parts.append(Section(heading=heading, content=current.strip()))

        return parts

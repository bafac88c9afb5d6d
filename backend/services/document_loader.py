"""Document loading service for the Markdown knowledge base."""
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import yaml

from models.document import Document
from config import KNOWLEDGE_BASE_DIR

logger = logging.getLogger(__name__)

FRONT_MATTER_PATTERN = re.compile(r"^---\n(.*?)\n---\n(.*)$", re.DOTALL)

# Sub-directories of the knowledge base that are indexed
CONTENT_ROOTS = ("documents", "motorcycle-market")
FILENAME_PATTERN = re.compile(r"[\w\-]+")


def parse_front_matter(raw: str) -> Tuple[Dict[str, Any], str]:
    """
    Split a Markdown file into its YAML front-matter and body.

    Args:
        raw: Full file contents

    Returns:
        Tuple of (metadata dict, body). Files without front-matter return
        an empty dict and the normalized text unchanged.
    """
    normalized = raw.replace("\r\n", "\n")
    match = FRONT_MATTER_PATTERN.match(normalized)
    if not match:
        return {}, normalized

    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Invalid front-matter, ignoring metadata: {e}")
        meta = {}

    if not isinstance(meta, dict):
        meta = {}

    return meta, match.group(2).strip()


def _normalize_tags(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(t).strip() for t in value if str(t).strip()]
    if isinstance(value, str):
        return [t.strip() for t in value.strip("[]").split(",") if t.strip()]
    return []


class DocumentLoader:
    """Loads Markdown documents with front-matter from the knowledge base."""

    def __init__(self, kb_directory: Path = KNOWLEDGE_BASE_DIR):
        """
        Initialize DocumentLoader.

        Args:
            kb_directory: Root of the knowledge base
        """
        self.kb_directory = Path(kb_directory)

    def load_documents(self) -> List[Document]:
        """
        Load every Markdown file under the content roots.

        Returns:
            List of Document objects, ordered by path
        """
        documents = []

        for root in CONTENT_ROOTS:
            root_path = self.kb_directory / root
            if not root_path.exists():
                logger.debug(f"Knowledge base directory not found: {root_path}")
                continue

            for file_path in sorted(root_path.rglob("*.md")):
                try:
                    documents.append(self._load_file(file_path))
                except (OSError, UnicodeDecodeError) as e:
                    logger.error(f"Error loading {file_path}: {e}", exc_info=True)
                    # Skip unreadable file and continue
                    continue

        logger.info(f"Loaded {len(documents)} documents from {self.kb_directory}")
        return documents

    def load_document(self, doc_id: str) -> Optional[Document]:
        """
        Load a single document by id.

        Args:
            doc_id: Document id, e.g. "documents/coe-bidding"

        Returns:
            The Document, or None if the file does not exist
        """
        file_path = self.kb_directory / f"{doc_id}.md"
        if not file_path.is_file():
            return None
        return self._load_file(file_path)

    def add_document(
        self,
        filename: str,
        content: str,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> str:
        """
        Write a new document with generated front-matter.

        The vector store is not updated; a reindex picks the document up.

        Returns:
            Id of the new document

        Raises:
            ValueError: If the filename contains anything but word characters and dashes
        """
        if not FILENAME_PATTERN.fullmatch(filename):
            raise ValueError(f"Invalid document filename: {filename}")

        target_dir = self.kb_directory / "documents"
        target_dir.mkdir(parents=True, exist_ok=True)

        front_matter = {
            "category": category or "general",
            "tags": list(tags or []),
            "lastUpdated": datetime.now().strftime("%Y-%m"),
        }
        header = yaml.safe_dump(front_matter, allow_unicode=True, sort_keys=False)
        (target_dir / f"{filename}.md").write_text(f"---\n{header}---\n\n{content}", encoding="utf-8")

        doc_id = f"documents/{filename}"
        logger.info(f"Added knowledge base document: {doc_id}")
        return doc_id

    def _load_file(self, file_path: Path) -> Document:
        raw = file_path.read_text(encoding="utf-8")
        meta, content = parse_front_matter(raw)
        relative = file_path.relative_to(self.kb_directory).as_posix()

        return Document(
            id=relative[:-3] if relative.endswith(".md") else relative,
            filename=file_path.stem,
            category=str(meta.get("category") or "general"),
            tags=_normalize_tags(meta.get("tags")),
            last_updated=str(meta.get("lastUpdated") or "unknown"),
            content=content,
        )

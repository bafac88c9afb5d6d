"""
Knowledge base ingestion script for the MotoAI RAG service.

This script:
1. Loads all Markdown documents under knowledge_base/
2. Splits them into heading-bounded chunks
3. Generates embeddings (unless --keyword-only or the API is unavailable)
4. Writes the index snapshot to data/kb-index.json

Usage:
    python ingest_documents.py [--keyword-only]
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent))

from services.ai_tools import ToolRegistry
from services.chunking_engine import ChunkingEngine
from services.coe_data import CoeDataSource
from services.document_loader import DocumentLoader
from services.embedding_model import EmbeddingModel
from services.rag_engine import RAGEngine
from services.vector_store import VectorStore
from config import EMBEDDING_API_KEY, KNOWLEDGE_BASE_DIR, INDEX_PATH, LOG_FORMAT, LOG_LEVEL
from logger import setup_logging

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild the MotoAI knowledge base index")
    parser.add_argument(
        "--keyword-only",
        action="store_true",
        help="skip embeddings and build a keyword-only index"
    )
    parser.add_argument(
        "--kb-dir",
        type=Path,
        default=KNOWLEDGE_BASE_DIR,
        help=f"knowledge base directory (default: {KNOWLEDGE_BASE_DIR})"
    )
    parser.add_argument(
        "--index-path",
        type=Path,
        default=INDEX_PATH,
        help=f"index snapshot location (default: {INDEX_PATH})"
    )
    return parser.parse_args(argv)


async def ingest(kb_dir: Path, index_path: Path, keyword_only: bool = False) -> dict:
    """
    Rebuild the index snapshot.

    Returns:
        documentsProcessed, chunksCreated and vectorStore stats
    """
    embedding_model = None
    if not keyword_only:
        if EMBEDDING_API_KEY:
            embedding_model = EmbeddingModel()
        else:
            logger.warning("EMBEDDING_API_KEY not set; building a keyword-only index")
            keyword_only = True

    engine = RAGEngine(
        vector_store=VectorStore(embedding_model, index_path=index_path),
        llm_client=None,
        tool_registry=ToolRegistry(None, CoeDataSource()),
        document_loader=DocumentLoader(kb_dir),
        chunking_engine=ChunkingEngine(),
    )
    return await engine.reindex(keyword_only=keyword_only)


def main(argv=None) -> int:
    """Main ingestion process."""
    args = parse_args(argv)
    if LOG_FORMAT == "json":
        setup_logging(LOG_LEVEL)

    logger.info("=" * 60)
    logger.info("Starting MotoAI knowledge base ingestion")
    logger.info("=" * 60)

    try:
        result = asyncio.run(ingest(args.kb_dir, args.index_path, keyword_only=args.keyword_only))
    except KeyboardInterrupt:
        logger.warning("Ingestion interrupted by user")
        return 1
    except Exception as e:
        logger.error(f"Ingestion failed: {str(e)}", exc_info=True)
        return 1

    if result["documentsProcessed"] == 0:
        logger.error(f"No documents found under {args.kb_dir}")
        return 1

    logger.info(f"Documents processed: {result['documentsProcessed']}")
    logger.info(f"Chunks created: {result['chunksCreated']}")
    logger.info(f"Index written to {args.index_path}")
    print(json.dumps(result["vectorStore"], indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())

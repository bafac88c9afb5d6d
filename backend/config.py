"""Configuration management for the MotoAI RAG service."""
import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

BASE_DIR = Path(__file__).parent

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
EMBEDDING_API_KEY = os.getenv("EMBEDDING_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "json" switches to structured logs

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Model Configuration
LLM_BASE_URL = os.getenv("LLM_BASE_URL")  # None means the Groq default
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama-3.3-70b-versatile")
EMBEDDING_ENDPOINT = os.getenv(
    "EMBEDDING_ENDPOINT",
    "https://api-inference.bitdeer.ai/v1/embeddings"
)
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "BAAI/bge-m3")
EMBEDDING_BATCH_SIZE = 16

# Chat generation
CHAT_MAX_TOKENS = 2048
CHAT_TEMPERATURE = 0.7

# Storage locations
KNOWLEDGE_BASE_DIR = Path(os.getenv("KNOWLEDGE_BASE_DIR", str(BASE_DIR / "knowledge_base")))
INDEX_PATH = Path(os.getenv("INDEX_PATH", str(BASE_DIR / "data" / "kb-index.json")))
COE_DATA_PATH = Path(os.getenv("COE_DATA_PATH", str(BASE_DIR / "data" / "motorcycle_coe_results.json")))

# Chunking Configuration
MAX_CHUNK_CHARS = 1500
OVERLAP_CHARS = 200
MIN_CHUNK_CHARS = 20

# Retrieval Configuration
INDEX_VERSION = 1
RAG_TOP_K = 5
VECTOR_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3

# Response cache
CACHE_MAX_MEMORY_ENTRIES = 500
CACHE_CLEANUP_INTERVAL_SECONDS = 60 * 60
CACHE_TTL = {
    "listing-score": 24 * 60 * 60,
    "pricing": 6 * 60 * 60,
    "vision": 7 * 24 * 60 * 60,
    "chat": 1 * 60 * 60,
}

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# /graphchat/config.py
"""
Centralized configuration for the conversation engine.
Includes model names, paths, retrieval tuning and memory tuning.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Model Names ---
CHAT_MODEL_NAME = os.getenv("CHAT_MODEL_NAME", "openai/gpt-4o-mini")
# Empty means summaries run on the model answering the node.
SUMMARY_MODEL_NAME = os.getenv("SUMMARY_MODEL_NAME", "")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "openai/text-embedding-3-small")
DEFAULT_CONTEXT_LENGTH = _env_int("DEFAULT_CONTEXT_LENGTH", 4096, minimum=512)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/graphchat/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

DATA_DIR = Path(os.getenv("DATA_DIR", str(_DATA_DIR)))
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(DATA_DIR / "runtime_cache")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(DATA_DIR / "logs")))

# --- Attachment Processing Defaults ---
ATTACHMENT_MODE = os.getenv("ATTACHMENT_MODE", "retrieval")
RETRIEVAL_TOP_K = _env_int("RETRIEVAL_TOP_K", 6, minimum=1)
CHUNK_SIZE = _env_int("CHUNK_SIZE", 1200, minimum=400)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 200, minimum=0)
if CHUNK_OVERLAP >= CHUNK_SIZE:
    CHUNK_OVERLAP = max(0, CHUNK_SIZE // 6)

# --- Retrieval / Indexing Tuning ---
RETRIEVAL_MAX_CHUNKS_PER_FILE = _env_int("RETRIEVAL_MAX_CHUNKS_PER_FILE", 80, minimum=1)
EMBEDDING_BATCH_SIZE = _env_int("EMBEDDING_BATCH_SIZE", 32, minimum=1)
SEMANTIC_SCORE_WEIGHT = _env_float("SEMANTIC_SCORE_WEIGHT", 4.0, minimum=0.0)

# --- Summarization Tuning ---
FILE_SUMMARY_MAX_CHUNKS = _env_int("FILE_SUMMARY_MAX_CHUNKS", 12, minimum=1)
SUMMARY_REDUCE_GROUP_SIZE = _env_int("SUMMARY_REDUCE_GROUP_SIZE", 6, minimum=2)
SUMMARY_TAIL_MESSAGES = _env_int("SUMMARY_TAIL_MESSAGES", 6, minimum=1)
SUMMARY_TEMPERATURE = _env_float("SUMMARY_TEMPERATURE", 0.2, minimum=0.0)

# --- Context Window Sizing ---
RESERVED_OUTPUT_TOKENS = _env_int("RESERVED_OUTPUT_TOKENS", 512, minimum=0)
MIN_INPUT_TOKENS = _env_int("MIN_INPUT_TOKENS", 512, minimum=1)

# --- Memory Tuning ---
MEMORY_RECENCY_WINDOW_DAYS = _env_float("MEMORY_RECENCY_WINDOW_DAYS", 30.0, minimum=1.0)
MEMORY_PINNED_BONUS = _env_float("MEMORY_PINNED_BONUS", 0.6, minimum=0.0)
MEMORY_RECENCY_WEIGHT = _env_float("MEMORY_RECENCY_WEIGHT", 0.2, minimum=0.0)
MEMORY_AUTO_EXTRACT_DEFAULT = _env_bool("MEMORY_AUTO_EXTRACT_DEFAULT", True)

# --- Create necessary directories ---
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "graphchat.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)

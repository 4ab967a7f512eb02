"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("DESKCHAT_DATA_DIR", str(Path.home() / ".deskchat"))).expanduser()
DB_PATH = Path(os.getenv("DESKCHAT_DB_PATH", str(DATA_DIR / "knowledge.sqlite"))).expanduser()

# Provider catalog ships with the package; embedding configs are per user
PROVIDERS_PATH = Path(os.getenv("DESKCHAT_PROVIDERS", str(BASE_DIR / "providers.yaml")))
EMBEDDING_CONFIG_PATH = Path(
    os.getenv("DESKCHAT_EMBEDDING_CONFIG", str(DATA_DIR / "embedding.yaml"))
).expanduser()

# Chunking parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
CONTENT_PREVIEW_CHARS = int(os.getenv("CONTENT_PREVIEW_CHARS", "500"))

# Retrieval parameters
RETRIEVAL_MODE = os.getenv("RETRIEVAL_MODE", "hybrid")
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.7"))
OVERFETCH_FACTOR = int(os.getenv("OVERFETCH_FACTOR", "3"))  # candidates per list = top_k * factor
RRF_K = 60
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "4000"))

# Embedding API
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "60.0"))

# Keyword search: set to 0 to force the substring fallback
USE_FTS = os.getenv("USE_FTS", "1") not in ("0", "false", "False")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

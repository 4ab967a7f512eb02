#!/usr/bin/env python
"""Validate knowledge base setup - check dependencies, database and embedding configuration."""
import sys
import asyncio
import sqlite3
from pathlib import Path

# Color codes for terminal output
GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BLUE = "\033[94m"
RESET = "\033[0m"

def print_success(msg):
    print(f"{GREEN}✓{RESET} {msg}")

def print_error(msg):
    print(f"{RED}✗{RESET} {msg}")

def print_info(msg):
    print(f"{BLUE}ℹ{RESET} {msg}")

def print_warning(msg):
    print(f"{YELLOW}⚠{RESET} {msg}")

def print_section(title):
    print(f"\n{BLUE}{'='*60}{RESET}")
    print(f"{BLUE}{title:^60}{RESET}")
    print(f"{BLUE}{'='*60}{RESET}\n")

async def main(probe: bool = False):
    print_section("deskchat knowledge base - Setup Validation")

    errors = []
    warnings = []

    # 1. Python version check
    print_section("1. Python Environment")
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
    print_info(f"Python version: {python_version}")
    if sys.version_info >= (3, 10):
        print_success("Python version >= 3.10")
    else:
        print_error("Python version < 3.10 (required)")
        errors.append("Python version too old")

    # 2. Import core dependencies
    print_section("2. Core Dependencies")

    dependencies = [
        ("httpx", "HTTP client"),
        ("numpy", "Vector math"),
        ("pydantic", "Data validation"),
        ("yaml", "YAML config"),
        ("structlog", "Structured logging"),
        ("pypdf", "PDF extraction"),
        ("docx", "DOCX extraction"),
        ("openpyxl", "XLSX extraction"),
        ("bs4", "HTML extraction"),
        ("lxml", "HTML parser backend"),
        ("pytest", "Testing framework"),
    ]

    for module_name, description in dependencies:
        try:
            __import__(module_name)
            print_success(f"{description:30} ({module_name})")
        except ImportError as e:
            print_error(f"{description:30} ({module_name}) - {e}")
            errors.append(f"Missing: {module_name}")

    # 3. SQLite and FTS5
    print_section("3. SQLite")

    print_info(f"SQLite version: {sqlite3.sqlite_version}")
    conn = sqlite3.connect(":memory:")
    try:
        conn.execute("CREATE VIRTUAL TABLE probe USING fts5(content)")
        print_success("FTS5 available (keyword search uses BM25)")
    except sqlite3.OperationalError:
        print_warning("FTS5 unavailable (keyword search falls back to substring matching)")
        warnings.append("No FTS5")
    finally:
        conn.close()

    # 4. Configuration
    print_section("4. Configuration")

    try:
        # Add parent directory to path to import deskchat
        sys.path.insert(0, str(Path(__file__).parent.parent))
        from deskchat import config
        from deskchat.providers import load_embedding_configs, load_provider_catalog

        print_success("Config loaded successfully")
        print_info(f"  Data directory: {config.DATA_DIR}")
        print_info(f"  Database: {config.DB_PATH}")
        print_info(f"  Chunk size: {config.CHUNK_SIZE} chars, overlap {config.CHUNK_OVERLAP}")
        print_info(
            f"  Retrieval: {config.RETRIEVAL_MODE}, top_k={config.RETRIEVAL_TOP_K}, "
            f"threshold={config.SIMILARITY_THRESHOLD}"
        )

        catalog = load_provider_catalog()
        print_success(f"Provider catalog: {', '.join(sorted(catalog))}")

        configs = load_embedding_configs()
        if configs:
            print_success(f"Embedding configs in {config.EMBEDDING_CONFIG_PATH}:")
            for cfg in configs.values():
                key_state = "key set" if cfg.resolve_api_key() else "no key"
                print(f"    - {cfg.id}: {cfg.provider}/{cfg.model} ({cfg.dim} dims, {key_state})")
        else:
            print_warning(f"No embedding configs found at {config.EMBEDDING_CONFIG_PATH}")
            warnings.append("No embedding configs")

    except Exception as e:
        print_error(f"Failed to load config: {e}")
        errors.append("Config loading failed")
        return errors, warnings

    # 5. Embedding providers
    print_section("5. Embedding Providers")

    if not probe:
        print_info("Skipped (run with --probe to send a test embedding per config)")
    else:
        from deskchat.embedding_client import EmbeddingClient
        from deskchat.errors import EmbeddingError

        for cfg in configs.values():
            try:
                vector = await EmbeddingClient(cfg, timeout=10.0).embed("test")
                print_success(f"{cfg.id}: embedding API working (dimension: {len(vector)})")
            except EmbeddingError as e:
                print_error(f"{cfg.id}: {type(e).__name__}: {e}")
                errors.append(f"Embedding config {cfg.id} failed")

    # 6. Summary
    print_section("Summary")

    if not errors:
        print_success("All checks passed! ✨")
    else:
        print_error(f"Found {len(errors)} error(s):")
        for i, error in enumerate(errors, 1):
            print(f"  {i}. {error}")

    if warnings:
        print_warning(f"\nFound {len(warnings)} warning(s):")
        for i, warning in enumerate(warnings, 1):
            print(f"  {i}. {warning}")

    print()
    return errors, warnings

if __name__ == "__main__":
    errors, warnings = asyncio.run(main(probe="--probe" in sys.argv[1:]))
    sys.exit(1 if errors else 0)

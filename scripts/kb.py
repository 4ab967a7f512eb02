#!/usr/bin/env python
"""Manage local knowledge bases from the command line.

Usage:
    python scripts/kb.py create "Papers" --embedding openai-small
    python scripts/kb.py list
    python scripts/kb.py import <kb_id> docs/ report.pdf
    python scripts/kb.py docs <kb_id>
    python scripts/kb.py search <kb_id> "what is rrf" --mode hybrid --top-k 5
    python scripts/kb.py delete <kb_id>
    python scripts/kb.py models
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import List

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from deskchat import config
from deskchat.db import Database
from deskchat.errors import KnowledgeBaseError
from deskchat.log_config import configure_logging
from deskchat.providers import get_available_embedding_models
from deskchat.rag.doc_parser import FORMATS
from deskchat.rag.manager import KnowledgeBaseManager, get_manager
from deskchat.rag.models import DocumentStatus
from deskchat.rag.retriever import format_context
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        """Start progress reporting."""
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        """Update progress."""
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        """Finish progress reporting."""
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Import Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Files imported:  {stats['files_imported']}")
        print(f"  ❌ Files failed:    {stats['files_failed']}")
        print(f"  📝 Chunks created:  {stats['chunks_created']}")
        print(f"  ⏱️  Time elapsed:    {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  ⚡ Import rate:     {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        for filename, message in stats["failures"]:
            print(f"⚠️  {filename}: {message}")
        if stats["failures"]:
            print()


def discover_files(paths: List[Path]) -> List[Path]:
    """Expand directories into the supported files they contain."""
    files = []
    for path in paths:
        if path.is_dir():
            files.extend(
                sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower().lstrip(".") in FORMATS)
            )
        else:
            files.append(path)
    return files


def cmd_create(manager: KnowledgeBaseManager, args) -> int:
    kb = manager.create_knowledge_base(
        name=args.name,
        embedding_config_ref=args.embedding,
        description=args.description,
        chunk_size=args.chunk_size,
        chunk_overlap=args.chunk_overlap,
    )
    print(f"✅ Created knowledge base {kb.id}")
    print(f"   Name:       {kb.name}")
    print(f"   Embedding:  {kb.embedding_config_ref} ({kb.embedding_dim} dims)")
    print(f"   Chunking:   {kb.chunk_size} chars, {kb.chunk_overlap} overlap")
    return 0


def cmd_list(manager: KnowledgeBaseManager, args) -> int:
    kbs = manager.list_knowledge_bases()
    if not kbs:
        print("No knowledge bases yet.")
        return 0
    for kb in kbs:
        print(f"{kb.id}  {kb.name:<30} docs={kb.document_count:<5} {kb.embedding_config_ref}")
    return 0


async def cmd_import(manager: KnowledgeBaseManager, args) -> int:
    files = discover_files(args.paths)
    if not files:
        print("No supported files found.")
        return 1

    progress = ProgressReporter(verbose=args.verbose)
    stats = {"files_imported": 0, "files_failed": 0, "chunks_created": 0, "failures": []}
    progress.start(f"Importing {len(files)} file(s)")

    for idx, file_path in enumerate(files, 1):
        progress.update(idx, len(files), file_path)
        document = await manager.import_document(args.kb_id, file_path)
        if document.status is DocumentStatus.COMPLETED:
            stats["files_imported"] += 1
            stats["chunks_created"] += document.chunk_count
        else:
            stats["files_failed"] += 1
            stats["failures"].append((document.filename, document.error_message))

    progress.finish(stats)
    return 1 if stats["files_failed"] else 0


def cmd_docs(manager: KnowledgeBaseManager, args) -> int:
    for doc in manager.list_documents(args.kb_id):
        line = f"{doc.id}  {doc.filename:<40} {doc.status.value:<10} chunks={doc.chunk_count}"
        if doc.error_message:
            line += f"  ({doc.error_message})"
        print(line)
    return 0


async def cmd_delete(manager: KnowledgeBaseManager, args) -> int:
    if args.document:
        await manager.delete_document(args.target)
        print(f"🗑️  Deleted document {args.target}")
    else:
        await manager.delete_knowledge_base(args.target)
        print(f"🗑️  Deleted knowledge base {args.target}")
    return 0


async def cmd_search(manager: KnowledgeBaseManager, args) -> int:
    result = await manager.retrieve(
        args.kb_id,
        args.query,
        mode=args.mode,
        top_k=args.top_k,
        similarity_threshold=args.threshold,
    )

    if result.degraded:
        print(f"⚠️  {result.degraded_reason} (keyword results only)\n")

    print(f"{len(result.chunks)} of {result.total_chunks} candidate(s) passed the threshold\n")
    for i, retrieved in enumerate(result.chunks, 1):
        vector = f"{retrieved.vector_score:.3f}" if retrieved.vector_score is not None else "-"
        keyword = f"{retrieved.keyword_score:.3f}" if retrieved.keyword_score is not None else "-"
        print(
            f"{i}. {retrieved.document_filename} #{retrieved.chunk_index}  "
            f"score={retrieved.score:.4f} vector={vector} keyword={keyword}"
        )

    if args.context and result.chunks:
        print("\n" + format_context(result))
    return 0


def cmd_models(manager, args) -> int:
    for provider, model, dim in get_available_embedding_models():
        print(f"{provider:<12} {model:<35} {dim}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage local knowledge bases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verbose output")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help=f"SQLite database (default: {config.DB_PATH})",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a knowledge base")
    create.add_argument("name")
    create.add_argument("--embedding", required=True, help="Embedding config id from embedding.yaml")
    create.add_argument("--description", default="")
    create.add_argument("--chunk-size", type=int, default=None)
    create.add_argument("--chunk-overlap", type=int, default=None)

    sub.add_parser("list", help="List knowledge bases")

    imp = sub.add_parser("import", help="Import files or directories")
    imp.add_argument("kb_id")
    imp.add_argument("paths", type=Path, nargs="+")

    docs = sub.add_parser("docs", help="List documents of a knowledge base")
    docs.add_argument("kb_id")

    delete = sub.add_parser("delete", help="Delete a knowledge base (or a document with --document)")
    delete.add_argument("target")
    delete.add_argument("--document", action="store_true", help="Target is a document id")

    search = sub.add_parser("search", help="Retrieve chunks for a query")
    search.add_argument("kb_id")
    search.add_argument("query")
    search.add_argument("--mode", choices=["vector", "keyword", "hybrid"], default=None)
    search.add_argument("--top-k", type=int, default=None)
    search.add_argument("--threshold", type=float, default=None)
    search.add_argument("--context", action="store_true", help="Print the formatted context block")

    sub.add_parser("models", help="List known embedding models")

    return parser


COMMANDS = {
    "create": cmd_create,
    "list": cmd_list,
    "import": cmd_import,
    "docs": cmd_docs,
    "delete": cmd_delete,
    "search": cmd_search,
    "models": cmd_models,
}


async def main() -> int:
    """Main entry point for the knowledge base CLI."""
    args = build_parser().parse_args()
    configure_logging("DEBUG" if args.verbose else config.LOG_LEVEL)

    try:
        if args.command == "models":
            return cmd_models(None, args)

        manager = KnowledgeBaseManager(database=Database(args.db)) if args.db else get_manager()
        result = COMMANDS[args.command](manager, args)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    except KeyboardInterrupt:
        print("\n\n⚠️  Cancelled by user.\n")
        return 1

    except KnowledgeBaseError as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("kb_command_failed", command=args.command, error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))

"""threadrecall CLI — schema, bulk loads, sync, ad-hoc queries and dev server.

Usage:
    python cli.py migrate                           Create tables and indexes
    python cli.py load-messages FILE [--channel ID] Mirror + ingest a JSON export, then embed
    python cli.py load-docs [DIR]                   Store and embed .md/.mdx docs
    python cli.py sync [--channel ID]               Group conversations, re-embed changed ones
    python cli.py query TEXT [-k N] [--channel ID]  Run the read path and print the verdict
    python cli.py dev                               Start uvicorn with hot-reload
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("threadrecall-cli")

DOC_SUFFIXES = (".md", ".mdx")


def _context():
    """Build the application context, exit if storage is unavailable."""
    from context import AppContext
    from settings import settings

    try:
        ctx = AppContext.from_settings(settings)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    if not ctx.init_storage():
        logger.error("Database connection failed.  Is PostgreSQL running?")
        sys.exit(1)
    return ctx


# ---------------------------------------------------------------------------
#  File readers
# ---------------------------------------------------------------------------

def read_message_export(path: Path, channel_id: str | None = None) -> list:
    """Parse a JSON export: either a bare list or ``{"messages": [...]}``."""
    from models import Message

    data = json.loads(path.read_text(encoding="utf-8"))
    raw = data.get("messages", []) if isinstance(data, dict) else data
    messages = [Message.from_dict(m) for m in raw]
    if channel_id:
        messages = [replace(m, channel_id=channel_id) for m in messages]
    return messages


def collect_docs(root: Path) -> list:
    """Every .md/.mdx file under *root*, keyed by its relative POSIX path."""
    from models import Doc

    docs = []
    for path in sorted(root.rglob("*")):
        if path.is_file() and path.suffix in DOC_SUFFIXES:
            rel = path.relative_to(root).as_posix()
            docs.append(Doc(id=rel, file_name=rel, body=path.read_text(encoding="utf-8")))
    return docs


# ---------------------------------------------------------------------------
#  Commands
# ---------------------------------------------------------------------------

def cmd_migrate(args):
    """Create tables (and the vector extension) if missing."""
    ctx = _context()
    ctx.close()
    logger.info("Schema ready")


def cmd_load_messages(args):
    """Mirror an export locally, ingest it (parent inference), then embed."""
    path = Path(args.file)
    if not path.exists():
        logger.error(f"File not found: {path}")
        sys.exit(1)

    messages = read_message_export(path, args.channel)
    if not messages:
        logger.error(f"No messages in {path}")
        sys.exit(1)

    by_channel: dict[str, list] = {}
    for m in messages:
        by_channel.setdefault(m.channel_id, []).append(m)

    ctx = _context()
    try:
        for channel, fresh in by_channel.items():
            logger.info(f"Processing channel {channel or '(none)'}: {len(fresh)} message(s)")
            history = ctx.message_cache.merge_and_save(channel, fresh)
            ingest = ctx.ingestor.ingest(history)
            sync = ctx.conversation_sync.sync(channel)
            logger.info(f"  {ingest.summary()}")
            logger.info(f"  {sync.summary()}")
    finally:
        ctx.close()


def cmd_load_docs(args):
    """Store every doc and embed the ones whose content changed."""
    from settings import settings

    root = Path(args.dir or settings.DOCS_DIR)
    if not root.exists():
        logger.error(f"Directory not found: {root}")
        sys.exit(1)

    docs = collect_docs(root)
    if not docs:
        logger.error(f"No .md or .mdx files in {root}")
        sys.exit(1)
    logger.info(f"Found {len(docs)} markdown file(s) in {root}/")

    ctx = _context()
    try:
        report = ctx.doc_sync.sync(docs)
        logger.info(f"Done — {report.summary()}")
    finally:
        ctx.close()


def cmd_sync(args):
    """Run the grouping + embedding pass."""
    ctx = _context()
    try:
        report = ctx.conversation_sync.sync(args.channel)
        logger.info(f"Done — {report.summary()}")
    finally:
        ctx.close()


def cmd_query(args):
    """Rephrase → KNN → generate, printing every step."""
    from bot import query_window
    from settings import settings

    ctx = _context()
    try:
        window = query_window(ctx.feed, args.channel or "", args.text, window=settings.RECENT_WINDOW)
        try:
            result = ctx.engine.retrieve(window, args.k)
        except Exception as e:
            logger.error(f"Retrieval failed: {e}")
            sys.exit(1)

        bar = "═" * 60
        print(f"\n═══ Query {bar}\n")
        print(f"  Rephrased: {result.query.rephrased}\n")
        print(f"  Conversations: {len(result.conversations)}")
        for hit in result.conversations:
            first = hit.messages[0].content.replace("\n", " ") if hit.messages else ""
            if len(first) > 55:
                first = first[:52] + "..."
            print(f"    [{hit.distance:.4f}] {hit.conversation_id}  ({len(hit.messages)} msgs) {first}")
        print(f"\n  Docs: {len(result.docs)}")
        for d in result.docs:
            print(f"    [{d.distance:.4f}] {d.doc.file_name}")

        verdict = ctx.engine.generate(result, window)
        print()
        if verdict is None:
            print("  No answer.")
            return
        decision = ctx.policy.decide(verdict, window[-1])
        print(f"  Helpfulness:  {verdict.helpfulness}")
        print(f"  Should reply: {verdict.should_reply}")
        print(f"  Would reply:  {decision.reply} ({', '.join(decision.triggers) or '-'})")
        print(f"  Cost:         ${verdict.cost:.4f}\n")
        print(verdict.reply)
    finally:
        ctx.close()


def cmd_dev(args):
    """Start uvicorn development server with hot-reload."""
    import subprocess

    from settings import settings

    host = args.host or settings.HOST
    port = args.port or settings.PORT

    backend_dir = Path(__file__).resolve().parent
    logger.info(f"Starting dev server at http://{host}:{port}")
    subprocess.run(
        [
            sys.executable, "-m", "uvicorn",
            "main:app",
            "--host", host,
            "--port", str(port),
            "--reload",
        ],
        cwd=str(backend_dir),
        check=False,
    )


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadrecall",
        description="Conversation graph + incremental embedding pipeline",
    )
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("migrate", help="Create tables and indexes")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("load-messages", help="Ingest a JSON message export")
    p.add_argument("file", help="Path to a JSON export")
    p.add_argument("--channel", default=None, help="Override the channel id of every message")
    p.set_defaults(func=cmd_load_messages)

    p = sub.add_parser("load-docs", help="Store and embed markdown docs")
    p.add_argument("dir", nargs="?", default=None, help="Docs directory (default: DOCS_DIR)")
    p.set_defaults(func=cmd_load_docs)

    p = sub.add_parser("sync", help="Re-embed changed conversations")
    p.add_argument("--channel", default=None, help="Only this channel")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("query", help="Run the read path for a question")
    p.add_argument("text", help="Question text")
    p.add_argument("-k", type=int, default=None, help="Number of conversations to retrieve")
    p.add_argument("--channel", default=None, help="Channel whose recent window to include")
    p.set_defaults(func=cmd_query)

    p = sub.add_parser("dev", help="Start dev server with hot-reload")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=cmd_dev)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()

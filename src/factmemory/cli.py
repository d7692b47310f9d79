"""
Command-line interface for factmemory.

Sub-commands
------------
store    – Store an exchange as facts.
retrieve – Retrieve the facts relevant to a query.
validate – Check a generated response for ambiguity, conflicts and dropped figures.
list     – List current facts.
history  – Show every fact written for a fingerprint.
count    – Print the number of current facts.
stats    – Print per-category usage and embedding status.
backfill – Re-queue facts whose embedding is missing.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .config import EngineConfig
from .llm import completer_from_env
from .memory import MemoryEngine


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="factmemory",
        description="Conversational fact memory for LLM assistants.",
    )
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="Directory of the memory store (default: ~/.cache/factmemory).",
    )
    parser.add_argument(
        "--collection",
        default=None,
        metavar="NAME",
        help="ChromaDB collection name (default: facts).",
    )
    parser.add_argument(
        "--user",
        default="default",
        metavar="ID",
        help="User the facts belong to (default: default).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log pipeline decisions.")

    sub = parser.add_subparsers(dest="command", required=True)

    # store
    p_store = sub.add_parser("store", help="Store an exchange as facts.")
    p_store.add_argument("text", nargs="?", help="Exchange text (reads stdin if omitted).")
    p_store.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # retrieve
    p_retrieve = sub.add_parser("retrieve", help="Retrieve relevant facts.")
    p_retrieve.add_argument("query", help="Natural-language query.")
    p_retrieve.add_argument(
        "-n",
        type=int,
        default=None,
        metavar="N",
        help="Maximum number of facts to return (default: 5).",
    )
    p_retrieve.add_argument(
        "--budget",
        type=int,
        default=None,
        metavar="TOKENS",
        help="Token budget for the returned facts (default: 2400).",
    )
    p_retrieve.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Output records and telemetry as JSON.",
    )

    # validate
    p_validate = sub.add_parser("validate", help="Validate a generated response.")
    p_validate.add_argument("response", help="The generated response.")
    p_validate.add_argument("--query", required=True, help="The query that produced it.")

    # list
    p_list = sub.add_parser("list", help="List current facts.")
    p_list.add_argument("--category", default=None, help="Only this category.")
    p_list.add_argument(
        "--limit",
        type=int,
        default=100,
        metavar="N",
        help="Maximum number of facts to show (default: 100).",
    )
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # history
    p_history = sub.add_parser("history", help="Show all facts for a fingerprint.")
    p_history.add_argument("fingerprint", help="Fingerprint id, e.g. user_salary.")

    # count / stats / backfill
    sub.add_parser("count", help="Print the number of current facts.")
    sub.add_parser("stats", help="Print usage statistics as JSON.")
    sub.add_parser("backfill", help="Re-queue facts with missing embeddings.")

    return parser


def _make_engine(args: argparse.Namespace) -> MemoryEngine:
    config = EngineConfig.from_env()
    return MemoryEngine(
        db_path=args.db,
        collection_name=args.collection,
        config=config,
        completer=completer_from_env(config.llm_model, config.compression_timeout),
    )


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    engine = _make_engine(args)

    if args.command == "store":
        text = args.text
        if text is None:
            text = sys.stdin.read()
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        outcome = engine.write(args.user, text)
        engine.wait_for_embeddings(timeout=30)
        if args.as_json:
            print(json.dumps(outcome.to_dict(), indent=2))
        else:
            print(f"Stored memory {outcome.memory_id} ({outcome.action}, category={outcome.category}).")
            for warning in outcome.warnings:
                print(f"Warning: {warning}", file=sys.stderr)

    elif args.command == "retrieve":
        result = engine.retrieve_context(args.user, args.query, budget=args.budget, max_count=args.n)
        if args.as_json:
            print(json.dumps(result.to_dict(), indent=2))
            return 0
        if not result.records:
            print("No memories found.")
            return 0
        for i, r in enumerate(result.records, 1):
            print(f"[{i}] id={r.id} category={r.category} tokens={r.token_count}")
            print(f"    {r.content[:200]}")
            print()

    elif args.command == "validate":
        print(engine.validate_response(args.response, args.query, args.user))

    elif args.command == "list":
        records = engine.list_current(args.user, category=args.category, limit=args.limit)
        if not records:
            print("No memories stored.")
            return 0
        if args.as_json:
            print(json.dumps([r.to_dict() for r in records], indent=2))
        else:
            for r in records:
                fp = f" fingerprint={r.fingerprint}" if r.fingerprint else ""
                print(f"id={r.id} category={r.category}{fp} embedding={r.embedding_status}")
                print(f"    {r.content[:120]}")
                print()

    elif args.command == "history":
        records = engine.history(args.user, args.fingerprint)
        if not records:
            print(f"No memories for {args.fingerprint}.")
            return 0
        for r in records:
            state = "current" if r.is_current else f"superseded_by={r.superseded_by}"
            print(f"id={r.id} {state}: {r.content[:120]}")

    elif args.command == "count":
        print(engine.count(args.user))

    elif args.command == "stats":
        print(json.dumps(engine.stats(args.user), indent=2))

    elif args.command == "backfill":
        queued = engine.backfill_embeddings()
        engine.wait_for_embeddings(timeout=60)
        print(f"Queued {queued} memory embedding(s).")

    return 0


if __name__ == "__main__":
    sys.exit(main())

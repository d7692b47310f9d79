"""
MCP (Model Context Protocol) server for factmemory.

Exposes the MemoryEngine as a set of tools so an assistant can store what
a user tells it, pull relevant facts into its context, and check its
answers against memory.

Run as a stdio server:
    python -m factmemory.mcp_server

Or via the installed entry-point:
    factmemory-mcp

Configuration comes from ``FACTMEMORY_*`` environment variables (see
:meth:`factmemory.config.EngineConfig.from_env`), for example:
    FACTMEMORY_DB_PATH          - store directory (default: ~/.cache/factmemory)
    FACTMEMORY_COLLECTION_NAME  - ChromaDB collection name (default: facts)
    FACTMEMORY_EMBEDDING_MODEL  - sentence-transformers model (default: all-MiniLM-L6-v2)
    OPENAI_API_KEY              - enables LLM fact compression
"""

from __future__ import annotations

import json

from mcp.server.fastmcp import FastMCP

from .config import EngineConfig
from .llm import completer_from_env
from .memory import MemoryEngine

# Lazy-initialised singleton so the embedding model is only loaded once.
_engine: MemoryEngine | None = None


def _get_engine() -> MemoryEngine:
    global _engine
    if _engine is None:
        config = EngineConfig.from_env()
        _engine = MemoryEngine(
            config=config,
            completer=completer_from_env(config.llm_model, config.compression_timeout),
        )
    return _engine


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "factmemory",
    instructions=(
        "Long-term fact memory about the user. "
        "Use `store_fact` after the user shares something worth remembering. "
        "Use `retrieve_context` before answering to pull in relevant facts. "
        "Use `validate_response` on your draft answer to catch ambiguous names, "
        "allergy/preference conflicts and dropped prices, dates or numbers. "
        "Use `list_facts`, `fact_history`, `count_facts` and `memory_stats` to inspect memory."
    ),
)


@mcp.tool()
def store_fact(user_id: str, exchange: str) -> str:
    """
    Store the facts contained in a user/assistant exchange.

    Near-duplicates boost the existing fact; a new value for a known
    attribute (salary, meeting time, ...) supersedes the old one.

    Args:
        user_id:  Owner of the fact.
        exchange: The user's message, optionally with the assistant's reply.

    Returns:
        A confirmation message with the memory id and what happened.
    """
    if not exchange.strip():
        return "Nothing to store: the exchange is empty."
    outcome = _get_engine().write(user_id, exchange)
    message = f"Stored memory {outcome.memory_id} ({outcome.action}, category={outcome.category})."
    if outcome.warnings:
        message += " Warnings: " + "; ".join(outcome.warnings)
    return message


@mcp.tool()
def retrieve_context(
    user_id: str,
    query: str,
    max_count: int = 5,
    budget: int = 2400,
    session_id: str = "",
) -> str:
    """
    Retrieve the facts most relevant to a query, within a token budget.

    Args:
        user_id:    Owner of the facts.
        query:      Natural-language question or topic.
        max_count:  Maximum number of facts to return (default 5).
        budget:     Token budget for the returned facts (default 2400).
        session_id: Optional session identifier; repeated queries in the
                    same session are served from a cache.

    Returns:
        JSON object with ``records`` (id, content, category, score fields)
        and ``telemetry`` (candidate count, selected ids, fallback use).
    """
    result = _get_engine().retrieve_context(
        user_id, query, budget=budget, max_count=max_count, session_id=session_id or None
    )
    if not result.records:
        return "No memories found."
    simplified = {
        "records": [
            {
                "id": r.id,
                "content": r.content,
                "category": r.category,
                "fingerprint": r.fingerprint,
                "created_at": r.created_at,
            }
            for r in result.records
        ],
        "telemetry": {
            k: result.telemetry[k]
            for k in ("candidate_count", "selected_ids", "fallback_used", "tokens_used", "primary_category")
        },
    }
    return json.dumps(simplified, indent=2)


@mcp.tool()
def validate_response(user_id: str, query: str, response: str) -> str:
    """
    Check a drafted answer against memory and return the corrected answer.

    Adds a clarification when a name in the query matches more than one
    person or when a documented allergy conflicts with a preference, and
    re-states exact figures from memory that the answer dropped.

    Args:
        user_id:  Owner of the facts.
        query:    The user's question.
        response: The drafted answer.

    Returns:
        The answer, possibly with a disclosure appended.
    """
    return _get_engine().validate_response(response, query, user_id)


@mcp.tool()
def list_facts(user_id: str, category: str = "", limit: int = 50) -> str:
    """
    List current facts (no ranking applied).

    Args:
        user_id:  Owner of the facts.
        category: Optional category filter.
        limit:    Maximum number of entries to return (default 50).

    Returns:
        JSON array of facts with id, content, category and metadata.
    """
    records = _get_engine().list_current(user_id, category=category or None, limit=limit)
    if not records:
        return "No memories stored."
    return json.dumps([r.to_dict() for r in records], indent=2)


@mcp.tool()
def fact_history(user_id: str, fingerprint: str) -> str:
    """
    Show every fact written for an attribute, including superseded ones.

    Args:
        user_id:     Owner of the facts.
        fingerprint: Attribute id such as ``user_salary``.

    Returns:
        JSON array, oldest first.
    """
    records = _get_engine().history(user_id, fingerprint)
    if not records:
        return f"No memories for {fingerprint}."
    return json.dumps([r.to_dict() for r in records], indent=2)


@mcp.tool()
def count_facts(user_id: str = "") -> str:
    """
    Return the number of current facts, for one user or overall.

    Returns:
        A short message with the count.
    """
    n = _get_engine().count(user_id or None)
    return f"{n} {'memory' if n == 1 else 'memories'} stored."


@mcp.tool()
def memory_stats(user_id: str) -> str:
    """
    Per-category token usage, embedding status counts and registry version.

    Returns:
        JSON object.
    """
    return json.dumps(_get_engine().stats(user_id), indent=2)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server over stdio."""
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

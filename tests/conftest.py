"""
Shared pytest fixtures for factmemory tests.

Uses ChromaDB in ephemeral (in-memory) mode, a throwaway sqlite database
and a deterministic fake embedding function so that tests run fast without
downloading any ML models or calling an LLM.
"""

from __future__ import annotations

import hashlib
import time
import uuid

import chromadb
import pytest

from factmemory.config import EngineConfig
from factmemory.memory import MemoryEngine
from factmemory.records import RecordStore
from factmemory.store import VectorStore


class FakeEmbeddingFunction:
    """
    Deterministic embedding function that maps text to a unit vector
    derived from its MD5 hash.  Fast and reproducible – no model download.
    Implements both the legacy ``__call__`` interface and the newer
    ``embed_documents`` / ``embed_query`` interface used by ChromaDB ≥ 0.5.
    """

    def name(self) -> str:  # required by ChromaDB >= 0.5
        return "fake-md5-embedding"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = []
        for text in texts:
            digest = hashlib.md5(text.encode()).digest()
            # 16-byte digest → 16-dim float vector in [-1, 1]
            vec = [(b - 128) / 128.0 for b in digest]
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            embeddings.append([x / norm for x in vec])
        return embeddings

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_documents(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)

    def embed_query(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)


class FlakyEmbeddingFunction(FakeEmbeddingFunction):
    """Raises while ``failing`` is set; otherwise behaves like the fake."""

    def __init__(self, failing: bool = True, delay: float = 0.0) -> None:
        self.failing = failing
        self.delay = delay
        self.calls = 0

    def _embed(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.failing:
            raise RuntimeError("embedding backend unavailable")
        return super()._embed(texts)


class FakeCompleter:
    """
    Stand-in for the LLM.  Returns ``responses[exchange]`` when the prompt
    contains a known exchange, otherwise echoes the exchange back.
    """

    def __init__(self, responses: dict[str, str] | None = None, error: Exception | None = None) -> None:
        self.responses = responses or {}
        self.error = error
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        for exchange, reply in self.responses.items():
            if exchange in prompt:
                return reply
        return prompt.split("Conversation:\n", 1)[1].rsplit("\n\nFacts:", 1)[0]


# A single shared EphemeralClient instance for the test session.
# Each fixture call creates a uniquely named collection so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def make_vector_store(embedding_function=None, prefix: str = "test") -> VectorStore:
    return VectorStore(
        _client=_EPHEMERAL_CLIENT,
        collection_name=f"{prefix}_{uuid.uuid4().hex}",
        _embedding_function=embedding_function or FakeEmbeddingFunction(),
    )


TEST_CONFIG = EngineConfig(background_embeddings=False, embedding_timeout=2.0, embedding_retries=0)


@pytest.fixture()
def ephemeral_store() -> VectorStore:
    """In-memory VectorStore with the fake embedding function.

    A unique collection name is used per fixture invocation so that tests
    cannot interfere with each other despite sharing the same EphemeralClient.
    """
    return make_vector_store()


@pytest.fixture()
def records() -> RecordStore:
    store = RecordStore(":memory:")
    yield store
    store.close()


@pytest.fixture()
def make_engine():
    """Factory for MemoryEngines wired to in-memory stores; embeddings run inline."""
    engines: list[MemoryEngine] = []

    def _make(embedding_function=None, completer=None, **overrides) -> MemoryEngine:
        engine = MemoryEngine(
            config=TEST_CONFIG.with_overrides(**overrides),
            completer=completer,
            _store=make_vector_store(embedding_function),
            _records=RecordStore(":memory:"),
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture()
def engine(make_engine) -> MemoryEngine:
    """MemoryEngine with no LLM: facts are stored uncompressed."""
    return make_engine()

"""
Vector store wrapper around ChromaDB for fact embeddings.
"""

from __future__ import annotations

from typing import Any, Sequence

import chromadb
from chromadb.utils import embedding_functions


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a sentence-transformer embedding function for ChromaDB."""
    return embedding_functions.SentenceTransformerEmbeddingFunction(
        model_name=model_name
    )


def where_clause(**filters: Any) -> dict | None:
    """Build a ChromaDB ``where`` filter from equality conditions."""
    conditions = [{k: v} for k, v in filters.items() if v is not None]
    if not conditions:
        return None
    if len(conditions) == 1:
        return conditions[0]
    return {"$and": conditions}


class VectorStore:
    """
    Persistent vector store backed by ChromaDB.

    Each entry is keyed by the string form of a record id and carries
    ``user_id``, ``category`` and ``is_current`` metadata so queries can be
    scoped the same way the relational store is.

    Uses cosine similarity so that distance values returned by queries
    are in the range [0, 2]:
        distance = 1 - cosine_similarity
        cosine_similarity ∈ [-1, 1]  →  distance ∈ [0, 2]
    """

    def __init__(
        self,
        path: str = "./chroma_db",
        collection_name: str = "facts",
        embedding_model: str = "all-MiniLM-L6-v2",
        _client: chromadb.ClientAPI | None = None,
        _embedding_function: Any | None = None,
    ) -> None:
        self.client = _client or chromadb.PersistentClient(path=path)
        self.embedding_function = _embedding_function or get_embedding_function(embedding_model)
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            embedding_function=self.embedding_function,
            metadata={"hnsw:space": "cosine"},
        )

    def embed(self, text: str) -> list[float]:
        """Embed a single text with the collection's embedding function."""
        vectors = self.embedding_function([text])
        return [float(x) for x in vectors[0]]

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def add(
        self,
        id: str,
        document: str,
        metadata: dict | None = None,
        embedding: Sequence[float] | None = None,
    ) -> None:
        """Add a document, optionally with a precomputed embedding."""
        self.collection.add(
            ids=[id],
            documents=[document],
            metadatas=[metadata] if metadata else None,
            embeddings=[list(embedding)] if embedding is not None else None,
        )

    def update_metadata(self, id: str, metadata: dict) -> None:
        """Replace the metadata of an existing document."""
        self.collection.update(ids=[id], metadatas=[metadata])

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def query(
        self,
        query_embedding: Sequence[float],
        n_results: int = 5,
        where: dict | None = None,
    ) -> dict:
        """
        Query the collection by embedding similarity.

        Returns a ChromaDB result dict with keys:
            ids, documents, metadatas, distances
        """
        n = min(n_results, self.count(where))
        if n == 0:
            return {"ids": [[]], "documents": [[]], "metadatas": [[]], "distances": [[]]}
        return self.collection.query(
            query_embeddings=[list(query_embedding)],
            n_results=n,
            where=where,
        )

    def get(self, id: str) -> dict:
        """Fetch a single document by ID."""
        return self.collection.get(ids=[id])

    def has(self, id: str) -> bool:
        return bool(self.collection.get(ids=[id])["ids"])

    def count(self, where: dict | None = None) -> int:
        """Return the number of stored documents, optionally filtered."""
        if where is None:
            return self.collection.count()
        return len(self.collection.get(where=where, include=[])["ids"])

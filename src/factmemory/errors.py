"""
Failure taxonomy.

Each subclass names one failure mode of the memory pipeline.  Collaborator
wrappers raise them; the engine catches each one where its fallback lives
(uncompressed storage, fail-open dedup, default category, keyword retrieval,
unmodified response).
"""

from __future__ import annotations


class FactMemoryError(Exception):
    """Base class for all factmemory failures."""


class CompressionFailure(FactMemoryError):
    """The fact-extraction call failed, timed out or returned nothing."""


class DedupFailure(FactMemoryError):
    """Vector distance could not be computed for a new fact."""


class RoutingFailure(FactMemoryError):
    """No category scored above the floor."""


class EmbeddingFailure(FactMemoryError):
    """The embedding function raised or returned an unusable vector."""


class EmbeddingTimeout(EmbeddingFailure):
    """The embedding function did not answer within its timeout."""


class ValidatorFailure(FactMemoryError):
    """A post-generation validator could not query storage."""

"""
Background embedding generation with tracked status.

Writes return before their fact is embedded.  Each record gets an
:class:`EmbeddingTask` whose status moves ``pending -> ready | failed``;
the status is mirrored into the record store so retrieval can tell an
unembedded fact from one that is simply dissimilar.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

from .errors import EmbeddingFailure, EmbeddingTimeout
from .llm import call_with_timeout
from .records import (
    EMBEDDING_FAILED,
    EMBEDDING_PENDING,
    EMBEDDING_READY,
    MemoryRecord,
    RecordStore,
)
from .store import VectorStore

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingTask:
    record_id: int
    status: str = EMBEDDING_PENDING
    attempts: int = 0
    error: str | None = None


def vector_metadata(record: MemoryRecord) -> dict:
    """Metadata stored next to a record's vector, used for query filters."""
    return {
        "user_id": record.user_id,
        "category": record.category,
        "is_current": record.is_current,
    }


class EmbeddingWorker:
    """
    Embeds records off the write path.

    Parameters
    ----------
    store:
        Vector store that computes and holds the embeddings.
    records:
        Relational store whose ``embedding_status`` column is kept in sync.
    timeout:
        Seconds allowed for one embedding call.
    retries:
        Extra attempts after a failed or timed-out call.
    max_workers:
        Size of the background pool.
    background:
        When ``False`` tasks run inline on :meth:`submit`.
    """

    def __init__(
        self,
        store: VectorStore,
        records: RecordStore,
        timeout: float = 3.0,
        retries: int = 1,
        max_workers: int = 2,
        background: bool = True,
    ) -> None:
        self.store = store
        self.records = records
        self.timeout = timeout
        self.retries = retries
        self.background = background
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="factmemory-embed")
            if background
            else None
        )
        self._lock = threading.Lock()
        self._tasks: dict[int, EmbeddingTask] = {}
        self._futures: dict[int, Future] = {}

    # ------------------------------------------------------------------
    # Embedding calls
    # ------------------------------------------------------------------

    def embed_text(self, text: str) -> list[float]:
        """
        Embed *text* under the configured timeout, with up to ``retries`` retries.

        Raises :class:`EmbeddingTimeout` or :class:`EmbeddingFailure` when
        every attempt fails.
        """
        last = EmbeddingFailure("embedding failed")
        for attempt in range(1 + max(self.retries, 0)):
            try:
                vector = call_with_timeout(self.store.embed, self.timeout, text)
            except TimeoutError as exc:
                last = EmbeddingTimeout(str(exc))
            except Exception as exc:  # the embedding backend may raise anything
                last = EmbeddingFailure(f"{type(exc).__name__}: {exc}")
            else:
                if vector:
                    return vector
                last = EmbeddingFailure("empty embedding")
            logger.debug("embedding attempt %d failed: %s", attempt + 1, last)
        raise last

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def submit(self, record: MemoryRecord) -> EmbeddingTask:
        """Queue *record* for embedding and return its task."""
        with self._lock:
            task = self._tasks.get(record.id)
            if task is not None and task.status == EMBEDDING_PENDING and record.id in self._futures:
                return task
            task = EmbeddingTask(record_id=record.id)
            self._tasks[record.id] = task
        if self._executor is None:
            self._run(task)
        else:
            future = self._executor.submit(self._run, task)
            with self._lock:
                self._futures[record.id] = future
            future.add_done_callback(lambda _f, rid=record.id: self._forget(rid))
        return task

    def _forget(self, record_id: int) -> None:
        with self._lock:
            self._futures.pop(record_id, None)

    def _run(self, task: EmbeddingTask) -> None:
        record = self.records.get(task.record_id)
        if record is None:
            task.status, task.error = EMBEDDING_FAILED, "record not found"
            return
        task.attempts += 1
        try:
            vector = self.embed_text(record.content)
            key = str(record.id)
            # Re-read so a supersession that landed meanwhile is reflected.
            latest = self.records.get(record.id) or record
            if self.store.has(key):
                self.store.update_metadata(key, vector_metadata(latest))
            else:
                self.store.add(key, latest.content, vector_metadata(latest), embedding=vector)
        except Exception as exc:  # background task: any failure marks the record failed
            task.status, task.error = EMBEDDING_FAILED, str(exc)
            self.records.set_embedding_status(record.id, EMBEDDING_FAILED)
            logger.warning(
                "embedding failed for record %d (fingerprint=%s): %s",
                record.id, record.fingerprint, exc,
            )
            return
        task.status = EMBEDDING_READY
        self.records.set_embedding_status(record.id, EMBEDDING_READY)
        logger.debug("embedded record %d", record.id)

    def status(self, record_id: int) -> str:
        """Status of *record_id*, falling back to the persisted column."""
        with self._lock:
            task = self._tasks.get(record_id)
        if task is not None:
            return task.status
        record = self.records.get(record_id)
        return record.embedding_status if record else EMBEDDING_FAILED

    def mark_superseded(self, record: MemoryRecord) -> None:
        """Mirror a record's non-current state into the vector metadata."""
        key = str(record.id)
        if record.embedding_status == EMBEDDING_READY and self.store.has(key):
            self.store.update_metadata(key, {**vector_metadata(record), "is_current": False})

    def wait(self, timeout: float | None = None) -> bool:
        """Block until queued tasks finish.  Returns ``True`` if all finished."""
        with self._lock:
            pending = list(self._futures.values())
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def backfill(self) -> int:
        """Re-queue every current record still pending or failed."""
        queued = 0
        for record in self.records.with_embedding_status(EMBEDDING_PENDING, EMBEDDING_FAILED):
            with self._lock:
                in_flight = record.id in self._futures
            if in_flight:
                continue
            self.submit(record)
            queued += 1
        logger.info("backfill queued %d record(s)", queued)
        return queued

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)

"""
External call helpers: the LLM completion collaborator and timeouts.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Protocol, TypeVar

import openai

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Shared by every bounded call in the process.  A call that outlives its
# timeout keeps its thread until it returns; the caller moves on.
_CALL_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="factmemory-call")


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: Any, **kwargs: Any) -> T:
    """
    Run ``fn(*args, **kwargs)`` and wait at most *timeout* seconds.

    Raises :class:`TimeoutError` when the deadline passes; any exception
    raised by *fn* propagates unchanged.
    """
    future = _CALL_POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise TimeoutError(f"{getattr(fn, '__name__', 'call')} exceeded {timeout:.1f}s") from None


class Completer(Protocol):
    """Anything that turns a prompt into a completion."""

    def complete(self, prompt: str) -> str: ...


class OpenAICompleter:
    """
    :class:`Completer` backed by the OpenAI chat completions API.

    Parameters
    ----------
    model:
        Chat model identifier.  Defaults to ``"gpt-4o-mini"``.
    max_tokens:
        Completion length cap.  Fact lists are short.
    timeout:
        Per-request timeout passed to the client, in seconds.
    client:
        Pre-built ``openai.OpenAI`` client.  Built from the environment
        (``OPENAI_API_KEY``) when omitted.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        max_tokens: int = 150,
        timeout: float = 10.0,
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = openai.OpenAI(timeout=timeout)
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    def complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )
        content = response.choices[0].message.content or ""
        logger.debug("completion model=%s chars=%d", self.model, len(content))
        return content.strip()


def completer_from_env(model: str = "gpt-4o-mini", timeout: float = 10.0) -> OpenAICompleter | None:
    """An :class:`OpenAICompleter` when ``OPENAI_API_KEY`` is set, else ``None``."""
    if not os.environ.get("OPENAI_API_KEY"):
        logger.info("OPENAI_API_KEY not set, facts will be stored uncompressed")
        return None
    return OpenAICompleter(model=model, timeout=timeout)

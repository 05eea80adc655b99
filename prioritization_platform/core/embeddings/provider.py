from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Literal, Optional, Protocol, Sequence

from prioritization_platform.core.errors import EmbeddingError


log = logging.getLogger("prioritization_platform.embeddings")

EmbeddingStatus = Literal["completed", "pending", "failed"]


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


@dataclass(frozen=True)
class EmbeddingTask:
    task_id: str
    task_text: str
    document_id: str


@dataclass(frozen=True)
class EmbeddingResult:
    task_id: str
    status: EmbeddingStatus
    embedding: Optional[list[float]] = None
    error_message: Optional[str] = None


def embedding_error(category: str, message: str) -> EmbeddingError:
    return EmbeddingError(
        code=f"E_EMBEDDING_{category.upper()}", message=message, category=category
    )


def generate_task_id(task_text: str, document_id: str) -> str:
    """Deterministic task id: sha256 of "<text>||<document_id>"."""
    return hashlib.sha256(f"{task_text}||{document_id}".encode("utf-8")).hexdigest()


class OpenAIEmbeddingProvider:
    """Embeddings through openai.AsyncOpenAI with a per-call timeout and dimension check."""

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        timeout_s: float = 10.0,
        base_url: Optional[str] = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self.timeout_s = timeout_s
        self._base_url = base_url or os.getenv("OPENAI_BASE_URL") or None
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not os.getenv("OPENAI_API_KEY"):
            raise embedding_error("missing_credentials", "OPENAI_API_KEY is not set")

        from openai import AsyncOpenAI

        self._client = AsyncOpenAI(base_url=self._base_url) if self._base_url else AsyncOpenAI()
        return self._client

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise embedding_error("invalid_response", "task text cannot be empty")
        vectors = await self._create([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise embedding_error("invalid_response", "task text cannot be empty")
        return await self._create(list(texts))

    async def _create(self, texts: list[str]) -> list[list[float]]:
        client = self._get_client()
        import openai

        try:
            resp = await asyncio.wait_for(
                client.embeddings.create(model=self.model, input=texts),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise embedding_error(
                "timeout", f"embedding generation timed out after {self.timeout_s:g}s"
            ) from e
        except openai.APITimeoutError as e:
            raise embedding_error("timeout", str(e)) from e
        except openai.RateLimitError as e:
            raise embedding_error("rate_limit", str(e)) from e
        except openai.AuthenticationError as e:
            raise embedding_error("missing_credentials", str(e)) from e
        except openai.OpenAIError as e:
            raise embedding_error("provider_error", str(e)) from e

        data = sorted(getattr(resp, "data", None) or [], key=lambda d: getattr(d, "index", 0))
        if len(data) != len(texts):
            raise embedding_error(
                "invalid_response", f"expected {len(texts)} embeddings, got {len(data)}"
            )

        vectors: list[list[float]] = []
        for item in data:
            vec = list(getattr(item, "embedding", None) or [])
            if len(vec) != self.dimensions:
                raise embedding_error(
                    "invalid_response",
                    f"invalid embedding dimensions: expected {self.dimensions}, got {len(vec)}",
                )
            vectors.append(vec)
        return vectors


async def generate_batch_embeddings(
    tasks: Sequence[EmbeddingTask], provider: EmbeddingProvider
) -> list[EmbeddingResult]:
    """Embed each task independently; a failed task comes back as `pending`."""
    if not tasks:
        return []

    started = time.perf_counter()

    async def one(task: EmbeddingTask) -> EmbeddingResult:
        try:
            vec = await provider.embed(task.task_text)
        except Exception as e:
            log.error(
                "task embedding failed | task_id=%s | document_id=%s | error=%s",
                task.task_id,
                task.document_id,
                e,
            )
            message = e.message if isinstance(e, EmbeddingError) else str(e)
            return EmbeddingResult(
                task_id=task.task_id, status="pending", error_message=message or type(e).__name__
            )
        return EmbeddingResult(task_id=task.task_id, status="completed", embedding=list(vec))

    results = await asyncio.gather(*(one(t) for t in tasks))

    completed = sum(1 for r in results if r.status == "completed")
    log.info(
        "batch embeddings done | total=%d | completed=%d | pending=%d | duration_ms=%d",
        len(results),
        completed,
        len(results) - completed,
        round((time.perf_counter() - started) * 1000),
    )
    return list(results)

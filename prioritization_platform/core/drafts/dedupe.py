from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Sequence

from prioritization_platform.core.embeddings.similarity import cosine_similarity
from prioritization_platform.core.model import DraftTask


log = logging.getLogger("prioritization_platform.drafts")

DEFAULT_THRESHOLD = 0.85


@dataclass(frozen=True)
class DedupeStats:
    phase10_count: int
    phase5_total: int
    phase5_suppressed: int
    final_count: int


@dataclass(frozen=True)
class DedupeResult:
    drafts: list[DraftTask]
    stats: DedupeStats


def deduplication_hash(task_text: str) -> str:
    return hashlib.sha256(task_text.lower().strip().encode("utf-8")).hexdigest()


def dedupe(
    primary: Sequence[DraftTask],
    secondary: Sequence[DraftTask],
    threshold: float = DEFAULT_THRESHOLD,
) -> DedupeResult:
    """Keep every primary draft; drop a secondary draft whose similarity to any
    primary draft is strictly above `threshold` (a draft exactly at it survives).

    Output is primaries then surviving secondaries, each group in input order.
    """
    survivors: list[DraftTask] = []
    for draft in secondary:
        closest = max(
            (cosine_similarity(draft.embedding, p.embedding) for p in primary), default=0.0
        )
        if closest > threshold:
            log.debug(
                "draft suppressed | draft_id=%s | similarity=%.3f | threshold=%.2f",
                draft.id,
                closest,
                threshold,
            )
            continue
        survivors.append(draft)

    drafts = list(primary) + survivors
    stats = DedupeStats(
        phase10_count=len(primary),
        phase5_total=len(secondary),
        phase5_suppressed=len(secondary) - len(survivors),
        final_count=len(drafts),
    )
    log.info(
        "drafts deduplicated | primary=%d | secondary=%d | suppressed=%d | final=%d",
        stats.phase10_count,
        stats.phase5_total,
        stats.phase5_suppressed,
        stats.final_count,
    )
    return DedupeResult(drafts=drafts, stats=stats)

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Mapping, Optional, Protocol, Sequence

from prioritization_platform.core.embeddings.provider import EmbeddingProvider
from prioritization_platform.core.embeddings.similarity import cosine_similarity
from prioritization_platform.core.errors import AdjustmentError
from prioritization_platform.core.model import (
    AdjustedPlan,
    AdjustmentDiff,
    AdjustmentMetadata,
    FilteredTask,
    MovedTask,
    PrioritizedPlan,
    Reflection,
    ReflectionWeight,
)
from prioritization_platform.core.ranking.recency import recency_weight


log = logging.getLogger("prioritization_platform.adjust")

FALLBACK_CONFIDENCE = 0.5
BOOST_SCALE = 0.25
MIN_MATCH_THRESHOLD = 0.1
MAX_REASON_LENGTH = 200
DEFAULT_REASON = "Adjusted by active reflection context"

_WORD_RE = re.compile(r"[a-z0-9]+")
# Clause boundaries: punctuation, or a contrast/focus word that starts a new instruction.
_CLAUSE_RE = re.compile(
    r"[,;.!?\n]+|\b(?:but|instead|while|whereas)\b|\b(?=focus\b|prioriti[sz]e\b)"
)
_EXCLUDE_RE = re.compile(
    r"\b(?:ignore|skip|exclude|unnecessary)\b"
    r"|\bno need\b|\bdon'?t need\b|\bdo not need\b|\bnot needed\b"
    r"|\bno\b(?!\s+time\b)"
)
_DEMOTE_RE = re.compile(
    r"\b(?:avoid|later|defer|delay|postpone|minimi[sz]e|tired|busy)\b"
    r"|\bnot now\b|\blow energy\b|\bno time\b|\bworry less\b|\bnot urgent\b"
)
# Words that never name a topic on their own.
_NON_TOPIC = frozenset(
    {
        "a", "about", "all", "an", "and", "any", "anything", "are", "avoid", "be", "busy",
        "defer", "delay", "do", "don", "dont", "energy", "exclude", "for", "i", "ignore",
        "in", "is", "it", "its", "later", "less", "low", "me", "minimise", "minimize", "my",
        "need", "needed", "no", "not", "now", "of", "on", "or", "our", "postpone", "related",
        "right", "skip", "stuff", "t", "task", "tasks", "that", "the", "these", "things",
        "this", "those", "time", "tired", "to", "unnecessary", "urgent", "we", "week",
        "with", "worry",
    }
)

ClauseKind = Literal["exclude", "demote", "boost"]


def _normalize(text: str) -> str:
    return (text or "").lower().replace("’", "'").replace("‘", "'")


def tokenize(text: str) -> list[str]:
    return _WORD_RE.findall(_normalize(text))


def lexical_similarity(task_tokens: Sequence[str], reflection_tokens: Sequence[str]) -> float:
    """Fraction of reflection tokens that also occur in the task text."""
    if not task_tokens or not reflection_tokens:
        return 0.0
    task_set = set(task_tokens)
    return sum(1 for t in reflection_tokens if t in task_set) / len(reflection_tokens)


def topic_tokens(text: str) -> frozenset[str]:
    return frozenset(t for t in tokenize(text) if t not in _NON_TOPIC and len(t) > 1)


def split_clauses(text: str) -> list[str]:
    return [c.strip() for c in _CLAUSE_RE.split(_normalize(text)) if c and c.strip()]


def classify_clause(clause: str) -> ClauseKind:
    """Exclusion wins over demotion; anything else is a boost request."""
    lower = _normalize(clause)
    if _EXCLUDE_RE.search(lower):
        return "exclude"
    if _DEMOTE_RE.search(lower):
        return "demote"
    return "boost"


@dataclass(frozen=True)
class ReflectionIntent:
    excluded: frozenset[str]
    demote_text: str
    boost_text: str


def interpret_reflection(text: str) -> ReflectionIntent:
    """Split a reflection into the topics it drops, lowers and asks to focus on.

    "Skip marketing this week, focus on the API launch" drops {marketing} and
    boosts "focus on the api launch". A reflection without any exclusion or
    demotion clause boosts with its full text.
    """
    excluded: set[str] = set()
    demote: list[str] = []
    boost: list[str] = []
    for clause in split_clauses(text):
        kind = classify_clause(clause)
        if kind == "exclude":
            excluded |= topic_tokens(clause)
        elif kind == "demote":
            topics = topic_tokens(clause)
            demote.extend(t for t in dict.fromkeys(tokenize(clause)) if t in topics)
        else:
            boost.append(clause)

    if not excluded and not demote:
        boost_text = (text or "").strip()
    else:
        boost_text = " ".join(boost)
    return ReflectionIntent(
        excluded=frozenset(excluded), demote_text=" ".join(demote), boost_text=boost_text
    )


def exclusion_topics(text: str) -> frozenset[str]:
    """Topic tokens a reflection asks to drop ("skip the marketing deck" -> {marketing, deck})."""
    return interpret_reflection(text).excluded


class RelevanceScorer(Protocol):
    async def relevance(self, reflection_text: str, task_texts: Mapping[str, str]) -> dict[str, float]:
        """Relevance in [0, 1] of the reflection to each task, keyed by task id."""
        ...


class LexicalScorer:
    async def relevance(self, reflection_text: str, task_texts: Mapping[str, str]) -> dict[str, float]:
        reflection_tokens = tokenize(reflection_text)
        return {
            task_id: lexical_similarity(tokenize(text), reflection_tokens)
            for task_id, text in task_texts.items()
        }


class EmbeddingScorer:
    """Cosine similarity between reflection and task embeddings (negative values count as 0)."""

    def __init__(self, provider: EmbeddingProvider) -> None:
        self.provider = provider
        self._task_vectors: dict[str, list[float]] = {}

    async def relevance(self, reflection_text: str, task_texts: Mapping[str, str]) -> dict[str, float]:
        missing = [tid for tid in task_texts if tid not in self._task_vectors]
        if missing:
            vectors = await self.provider.embed_batch([task_texts[tid] for tid in missing])
            self._task_vectors.update(zip(missing, vectors))

        reflection_vec = await self.provider.embed(reflection_text)
        return {
            tid: max(0.0, cosine_similarity(reflection_vec, self._task_vectors[tid]))
            for tid in task_texts
        }


@dataclass
class _TaskState:
    task_id: str
    baseline_rank: int
    confidence: float
    boost_reason: Optional[str] = None
    demote_reason: Optional[str] = None
    filtered_by: Optional[str] = None


def _nudge(
    states: Sequence[_TaskState],
    relevance: Mapping[str, float],
    weight: ReflectionWeight,
    direction: int,
) -> None:
    """Move confidence by up to BOOST_SCALE toward (+1) or away from (-1) the reflection."""
    for s in states:
        if s.filtered_by is not None:
            continue
        weighted = relevance.get(s.task_id, 0.0) * weight.recency_weight
        if weighted <= 0 or weighted < MIN_MATCH_THRESHOLD:
            continue
        delta = min(BOOST_SCALE, weighted * BOOST_SCALE)
        s.confidence = clamp_confidence(s.confidence + direction * delta)
        if direction > 0:
            if s.boost_reason is None or delta > BOOST_SCALE / 2:
                s.boost_reason = build_reason(weight.text)
        elif s.demote_reason is None or delta > BOOST_SCALE / 2:
            s.demote_reason = build_reason(weight.text, demoted=True)


def clamp_confidence(value: float) -> float:
    return round(max(0.0, min(1.0, value)), 3)


def _compact(text: Optional[str]) -> str:
    compact = re.sub(r"\s+", " ", text or "").strip().replace('"', "").replace("'", "")
    if len(compact) > MAX_REASON_LENGTH:
        compact = compact[: MAX_REASON_LENGTH - 3] + "..."
    return compact


def build_reason(reflection_text: str, *, demoted: bool = False) -> str:
    compact = _compact(reflection_text)
    if not compact:
        return DEFAULT_REASON
    verb = "Contradicts" if demoted else "Matches"
    return f"{verb} '{compact}' context"


def select_reflections(
    user_id: str, active_reflection_ids: Sequence[str], reflections: Sequence[Reflection]
) -> list[Reflection]:
    """Active, non-empty reflections owned by `user_id`, in requested-id order without repeats."""
    wanted: list[str] = []
    for rid in active_reflection_ids:
        if isinstance(rid, str) and rid and rid not in wanted:
            wanted.append(rid)

    by_id = {r.id: r for r in reflections}
    out: list[Reflection] = []
    for rid in wanted:
        r = by_id.get(rid)
        if r is None:
            continue
        if r.user_id is not None and r.user_id != user_id:
            continue
        if not r.is_active or not (r.text or "").strip():
            continue
        out.append(r)
    return out


async def adjust(
    user_id: str,
    baseline_plan: PrioritizedPlan,
    active_reflection_ids: Sequence[str],
    *,
    reflections: Sequence[Reflection],
    task_texts: Mapping[str, str],
    scorer: Optional[RelevanceScorer] = None,
    now: Optional[datetime] = None,
) -> AdjustedPlan:
    """Re-rank an existing plan against the active reflections without an LLM call.

    Each reflection is split into clauses (see interpret_reflection). Focus clauses
    raise and demotion clauses ("defer", "avoid", "not now") lower the confidence of
    relevant tasks by min(0.25, relevance * recency * 0.25), ignoring weighted
    relevance under 0.1. Exclusion clauses drop every task sharing a topic word.
    Same inputs give the same plan (duration aside).
    """
    started = time.perf_counter()

    ordered = [tid for tid in baseline_plan.ordered_task_ids if isinstance(tid, str) and tid]
    if not ordered:
        raise AdjustmentError(
            code="E_BASELINE_EMPTY", message="baseline plan is missing ordered_task_ids"
        )

    scorer = scorer or LexicalScorer()
    baseline_scores = dict(baseline_plan.confidence_scores or {})
    states = [
        _TaskState(
            task_id=tid,
            baseline_rank=i,
            confidence=float(baseline_scores.get(tid, FALLBACK_CONFIDENCE)),
        )
        for i, tid in enumerate(ordered, start=1)
    ]
    texts = {s.task_id: ((task_texts.get(s.task_id) or "").strip() or s.task_id) for s in states}

    active = select_reflections(user_id, active_reflection_ids, reflections)
    weights = [
        ReflectionWeight(
            id=r.id,
            text=r.text,
            recency_weight=clamp_confidence(recency_weight(r.created_at, now)),
            created_at=r.created_at.isoformat(),
        )
        for r in active
    ]

    for weight in weights:
        intent = interpret_reflection(weight.text)
        if intent.excluded:
            for s in states:
                if s.filtered_by is None and intent.excluded & set(tokenize(texts[s.task_id])):
                    s.filtered_by = weight.text

        if intent.demote_text:
            relevance = await scorer.relevance(intent.demote_text, texts)
            _nudge(states, relevance, weight, -1)

        if intent.boost_text:
            relevance = await scorer.relevance(intent.boost_text, texts)
            _nudge(states, relevance, weight, +1)

    kept = [s for s in states if s.filtered_by is None]
    filtered = [
        FilteredTask(task_id=s.task_id, reason=f"Excluded by reflection '{_compact(s.filtered_by)}'")
        for s in states
        if s.filtered_by is not None
    ]

    # Ranks in the diff are relative to the baseline order with filtered tasks removed.
    kept_rank = {s.task_id: i for i, s in enumerate(kept, start=1)}
    if any(s.boost_reason or s.demote_reason for s in kept):
        kept = sorted(kept, key=lambda s: (-s.confidence, s.baseline_rank))

    moved: list[MovedTask] = []
    for to_rank, s in enumerate(kept, start=1):
        from_rank = kept_rank[s.task_id]
        if from_rank == to_rank:
            continue
        if to_rank < from_rank:
            reason = s.boost_reason or DEFAULT_REASON
        else:
            reason = s.demote_reason or DEFAULT_REASON
        moved.append(MovedTask(task_id=s.task_id, from_rank=from_rank, to_rank=to_rank, reason=reason))

    filtered_ids = {f.task_id for f in filtered}
    confidence_scores = {
        tid: score for tid, score in baseline_scores.items() if tid not in filtered_ids
    }
    for s in kept:
        confidence_scores[s.task_id] = clamp_confidence(s.confidence)

    duration_ms = max(0, round((time.perf_counter() - started) * 1000))
    log.info(
        "plan adjusted | user_id=%s | reflections=%d | moved=%d | filtered=%d | duration_ms=%d",
        user_id,
        len(weights),
        len(moved),
        len(filtered),
        duration_ms,
    )

    return AdjustedPlan(
        ordered_task_ids=[s.task_id for s in kept],
        confidence_scores=confidence_scores,
        diff=AdjustmentDiff(moved=moved, filtered=filtered),
        adjustment_metadata=AdjustmentMetadata(
            reflections=weights,
            tasks_moved=len(moved),
            tasks_filtered=len(filtered),
            duration_ms=duration_ms,
        ),
    )

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from prioritization_platform.core.errors import AdjustmentError
from prioritization_platform.core.model import PrioritizedPlan, Reflection
from prioritization_platform.core.ranking.adjust import (
    EmbeddingScorer,
    adjust,
    exclusion_topics,
    interpret_reflection,
    lexical_similarity,
    select_reflections,
    tokenize,
)


NOW = datetime(2025, 3, 20, 12, 0, tzinfo=timezone.utc)

PLAN = PrioritizedPlan(
    ordered_task_ids=["t1", "t2", "t3", "t4"],
    confidence_scores={"t1": 0.8, "t2": 0.7, "t3": 0.6, "t4": 0.5},
)

TEXTS = {
    "t1": "Refactor billing service",
    "t2": "Prepare investor update deck",
    "t3": "Fix mobile login crash",
    "t4": "Write marketing blog post",
}


def _reflection(rid, text, days=1, **kwargs):
    return Reflection(id=rid, text=text, created_at=NOW - timedelta(days=days), **kwargs)


def _adjust(active, reflections, plan=PLAN, **kwargs):
    return asyncio.run(
        adjust("u1", plan, active, reflections=reflections, task_texts=TEXTS, now=NOW, **kwargs)
    )


def test_no_reflections_keeps_baseline():
    res = _adjust([], [])

    assert res.ordered_task_ids == ["t1", "t2", "t3", "t4"]
    assert res.diff.moved == []
    assert res.diff.filtered == []
    assert res.confidence_scores == PLAN.confidence_scores
    assert res.adjustment_metadata.reflections == []


def test_relevant_reflection_moves_task_up():
    refl = _reflection("r1", "mobile login crash")

    res = _adjust(["r1"], [refl])

    # similarity 1.0 * recency 1.0 -> +0.25 on t3
    assert res.confidence_scores["t3"] == 0.85
    assert res.ordered_task_ids == ["t3", "t1", "t2", "t4"]

    moved = {m.task_id: m for m in res.diff.moved}
    assert (moved["t3"].from_rank, moved["t3"].to_rank) == (3, 1)
    assert moved["t3"].reason == "Matches 'mobile login crash' context"
    assert (moved["t1"].from_rank, moved["t1"].to_rank) == (1, 2)
    assert moved["t1"].reason == "Adjusted by active reflection context"
    assert res.adjustment_metadata.tasks_moved == 3
    assert res.adjustment_metadata.reflections[0].recency_weight == 1.0


def test_stale_reflection_has_smaller_nudge():
    fresh = _adjust(["r1"], [_reflection("r1", "mobile login crash", days=1)])
    stale = _adjust(["r1"], [_reflection("r1", "mobile login crash", days=30)])

    assert fresh.confidence_scores["t3"] == 0.85
    # 1.0 * 0.25 recency -> weighted 0.25 -> delta 0.0625
    assert stale.confidence_scores["t3"] == pytest.approx(0.662, abs=1e-3)
    assert stale.adjustment_metadata.reflections[0].recency_weight == 0.25


def test_weak_matches_are_ignored():
    # 1 of 13 reflection tokens matches -> 0.077 < 0.1
    refl = _reflection("r1", "we should think about the long term roadmap for every single login idea")
    res = _adjust(["r1"], [refl])

    assert res.ordered_task_ids == ["t1", "t2", "t3", "t4"]
    assert res.confidence_scores == PLAN.confidence_scores


def test_exclusion_reflection_filters_tasks():
    refl = _reflection("r1", "Skip marketing work this week")

    res = _adjust(["r1"], [refl])

    assert "t4" not in res.ordered_task_ids
    assert [f.task_id for f in res.diff.filtered] == ["t4"]
    assert "Skip marketing work this week" in res.diff.filtered[0].reason
    assert res.adjustment_metadata.tasks_filtered == 1
    assert "t4" not in res.confidence_scores
    assert res.diff.moved == []


def test_exclusion_keeps_the_topic_a_reflection_focuses_on():
    plan = PrioritizedPlan(ordered_task_ids=["t1", "t2"], confidence_scores={"t1": 0.8, "t2": 0.7})
    texts = {"t1": "Write marketing blog post", "t2": "Ship the API launch checklist"}
    refl = _reflection("r1", "Skip marketing this week, focus on the API launch")

    res = asyncio.run(
        adjust("u1", plan, ["r1"], reflections=[refl], task_texts=texts, now=NOW)
    )

    assert res.ordered_task_ids == ["t2"]
    assert [f.task_id for f in res.diff.filtered] == ["t1"]
    # "focus on the api launch": 3 of 5 tokens match t2 -> +0.15
    assert res.confidence_scores["t2"] == 0.85


def test_contrast_word_ends_the_excluded_clause():
    intent = interpret_reflection("Ignore the docs but prioritize billing")
    assert intent.excluded == frozenset({"docs"})
    assert intent.boost_text == "prioritize billing"


def test_demoting_reflection_lowers_without_filtering():
    refl = _reflection("r1", "Defer the investor deck")

    res = _adjust(["r1"], [refl])

    assert res.diff.filtered == []
    assert res.confidence_scores["t2"] == 0.45
    assert res.ordered_task_ids == ["t1", "t3", "t4", "t2"]
    moved = {m.task_id: m for m in res.diff.moved}
    assert (moved["t2"].from_rank, moved["t2"].to_rank) == (2, 4)
    assert moved["t2"].reason == "Contradicts 'Defer the investor deck' context"
    assert moved["t3"].reason == "Adjusted by active reflection context"


def test_avoid_demotes_instead_of_excluding():
    res = _adjust(["r1"], [_reflection("r1", "Avoid marketing work")])

    assert "t4" in res.ordered_task_ids
    assert res.diff.filtered == []
    # "marketing work": 1 of 2 tokens match -> -0.125
    assert res.confidence_scores["t4"] == 0.375


def test_stale_demotion_is_smaller():
    res = _adjust(["r1"], [_reflection("r1", "Defer the investor deck", days=10)])
    # recency 0.5 -> delta 0.125
    assert res.confidence_scores["t2"] == 0.575


def test_inactive_foreign_and_duplicate_reflections_are_ignored():
    reflections = [
        _reflection("r1", "mobile login crash", is_active=False),
        _reflection("r2", "billing service", user_id="someone-else"),
        _reflection("r3", "   "),
        _reflection("r4", "investor update deck", user_id="u1"),
    ]
    picked = select_reflections("u1", ["r1", "r2", "r3", "r4", "r4", "missing"], reflections)

    assert [r.id for r in picked] == ["r4"]


def test_adjust_is_idempotent():
    reflections = [
        _reflection("r1", "mobile login crash"),
        _reflection("r2", "investor deck", days=10),
        _reflection("r3", "ignore blog posts"),
    ]
    a = _adjust(["r1", "r2", "r3"], reflections)
    b = _adjust(["r1", "r2", "r3"], reflections)

    da, db = a.to_dict(), b.to_dict()
    da["adjustment_metadata"].pop("duration_ms")
    db["adjustment_metadata"].pop("duration_ms")
    assert da == db


def test_missing_confidence_uses_fallback():
    plan = PrioritizedPlan(ordered_task_ids=["t1", "t2"], confidence_scores={})
    res = _adjust(["r1"], [_reflection("r1", "investor update deck")], plan=plan)

    assert res.confidence_scores["t1"] == 0.5
    assert res.confidence_scores["t2"] == 0.75
    assert res.ordered_task_ids == ["t2", "t1"]


def test_empty_baseline_raises():
    with pytest.raises(AdjustmentError) as exc:
        _adjust([], [], plan=PrioritizedPlan(ordered_task_ids=[], confidence_scores={}))
    assert exc.value.code == "E_BASELINE_EMPTY"


def test_confidence_is_clamped():
    plan = PrioritizedPlan(ordered_task_ids=["t1", "t3"], confidence_scores={"t1": 0.99, "t3": 0.2})
    res = _adjust(["r1"], [_reflection("r1", "refactor billing service")], plan=plan)

    assert res.confidence_scores["t1"] == 1.0


def test_to_dict_uses_from_and_to_keys():
    res = _adjust(["r1"], [_reflection("r1", "mobile login crash")])
    moved = res.to_dict()["diff"]["moved"]
    assert {"task_id", "from", "to", "reason"} == set(moved[0])


def test_helpers():
    assert tokenize("Don't SKIP the Q3 deck!") == ["don", "t", "skip", "the", "q3", "deck"]
    assert lexical_similarity(["a", "b"], ["a", "c"]) == 0.5
    assert lexical_similarity([], ["a"]) == 0.0
    assert exclusion_topics("No need for marketing emails") == frozenset({"marketing", "emails"})
    assert exclusion_topics("Focus on marketing emails") == frozenset()
    assert exclusion_topics("No blog posts this week") == frozenset({"blog", "posts"})
    assert exclusion_topics("Don’t need marketing emails") == frozenset({"marketing", "emails"})
    assert exclusion_topics("No time for marketing") == frozenset()
    assert interpret_reflection("No time for marketing").demote_text == "marketing"


class FakeEmbeddings:
    VECTORS = {
        "mobile": [1.0, 0.0],
        "billing": [0.0, 1.0],
    }

    def __init__(self):
        self.batch_calls = 0

    def _vec(self, text):
        for key, vec in self.VECTORS.items():
            if key in text.lower():
                return vec
        return [0.0, 0.0]

    async def embed(self, text):
        return self._vec(text)

    async def embed_batch(self, texts):
        self.batch_calls += 1
        return [self._vec(t) for t in texts]


def test_embedding_scorer_boosts_semantically_close_task():
    provider = FakeEmbeddings()
    reflections = [_reflection("r1", "crashes on mobile"), _reflection("r2", "mobile first")]

    res = _adjust(["r1", "r2"], reflections, scorer=EmbeddingScorer(provider))

    assert res.ordered_task_ids[0] == "t3"
    # Task vectors are embedded once and reused for the second reflection.
    assert provider.batch_calls == 1

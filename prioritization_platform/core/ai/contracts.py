from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union


EvaluationStatus = Literal["PASS", "NEEDS_IMPROVEMENT", "FAIL"]

CRITERIA: tuple[str, ...] = (
    "outcome_alignment",
    "strategic_coherence",
    "reflection_integration",
    "continuity",
)

BRIEF_REASONING_MAX_WORDS = 20

# Reasoning made only of these phrases says nothing about the task.
GENERIC_PHRASES: tuple[str, ...] = (
    "high priority",
    "top priority",
    "very important",
    "important",
    "critical",
    "urgent",
    "must do",
    "needed",
    "necessary",
    "tbd",
    "todo",
    "n/a",
    "none",
    "placeholder",
)
_FILLER_WORDS = {"this", "is", "it", "a", "an", "the", "very", "task", "so", "really", "and"}

_GENERIC_RE = re.compile(r"\b(?:" + "|".join(re.escape(p) for p in GENERIC_PHRASES) + r")\b")
_WORD_RE = re.compile(r"[a-z0-9]+")


@dataclass(frozen=True)
class Thoughts:
    outcome_analysis: str
    filtering_rationale: str
    prioritization_strategy: str
    self_check_notes: str
    negative_constraints_found: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class IncludedTask:
    task_id: str
    inclusion_reason: str
    alignment_score: float


@dataclass(frozen=True)
class ExcludedTask:
    task_id: str
    exclusion_reason: str
    task_text: Optional[str] = None
    alignment_score: Optional[float] = None


@dataclass(frozen=True)
class TaskScore:
    task_id: str
    impact: float
    effort: float
    confidence: float
    reasoning: Union[str, dict[str, Any]]
    brief_reasoning: Optional[str] = None
    dependencies: list[str] = field(default_factory=list)
    reflection_influence: Optional[str] = None


@dataclass(frozen=True)
class PrioritizationResult:
    thoughts: Thoughts
    included_tasks: list[IncludedTask]
    excluded_tasks: list[ExcludedTask]
    ordered_task_ids: list[str]
    per_task_scores: dict[str, TaskScore]
    confidence: float
    critical_path_reasoning: str
    corrections_made: Optional[str] = None

    @property
    def included_ids(self) -> list[str]:
        return [t.task_id for t in self.included_tasks]


@dataclass(frozen=True)
class CriterionScore:
    score: float
    notes: Optional[str] = None


@dataclass(frozen=True)
class EvaluationResult:
    status: EvaluationStatus
    feedback: str
    criteria_scores: dict[str, CriterionScore]
    evaluation_duration_ms: int = 0
    evaluator_model: Optional[str] = None

    @property
    def passed(self) -> bool:
        return self.status == "PASS"


def parse_json_payload(text: Any) -> Any:
    """Parse an LLM response body into JSON, tolerating ```json fences."""
    if isinstance(text, (dict, list)):
        return text
    if not isinstance(text, str):
        raise ValueError(f"response must be a string, got {type(text).__name__}")

    trimmed = text.strip()
    if trimmed.startswith("```"):
        trimmed = re.sub(r"^```(?:json)?", "", trimmed)
        trimmed = re.sub(r"```$", "", trimmed).strip()
    if not trimmed:
        raise ValueError("response is empty")
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError as e:
        raise ValueError(f"response is not valid JSON: {e.msg} (line {e.lineno})") from e


def is_generic_reasoning(text: str) -> bool:
    lowered = _GENERIC_RE.sub(" ", text.lower())
    remaining = [w for w in _WORD_RE.findall(lowered) if w not in _FILLER_WORDS]
    return not remaining


def validate_brief_reasoning(text: Any, path: str = "brief_reasoning") -> str:
    if not isinstance(text, str) or not text.strip():
        raise ValueError(f"{path} must be a non-empty string")
    words = text.split()
    if len(words) > BRIEF_REASONING_MAX_WORDS:
        raise ValueError(f"{path} must be at most {BRIEF_REASONING_MAX_WORDS} words")
    if is_generic_reasoning(text):
        raise ValueError(f"{path} is generic; reference outcomes, dependencies or mechanisms")
    return text.strip()


def brief_reasoning_fallback(task_id: str, inclusion_reason: Optional[str]) -> str:
    if isinstance(inclusion_reason, str) and inclusion_reason.strip():
        words = inclusion_reason.split()[:BRIEF_REASONING_MAX_WORDS]
        brief = " ".join(words)
        return brief if len(brief) <= 150 else brief[:147] + "..."
    return f"Fallback reasoning for task {task_id}"


def _text(
    obj: dict[str, Any],
    key: str,
    path: str,
    *,
    min_len: int = 1,
    max_len: Optional[int] = None,
    reject_generic: bool = False,
) -> str:
    v = obj.get(key)
    if not isinstance(v, str):
        raise ValueError(f"{path} must be a string")
    stripped = v.strip()
    if len(stripped) < min_len:
        raise ValueError(f"{path} must be at least {min_len} characters")
    if max_len is not None and len(stripped) > max_len:
        raise ValueError(f"{path} cannot exceed {max_len} characters")
    if reject_generic and is_generic_reasoning(stripped):
        raise ValueError(f"{path} is generic placeholder text")
    return stripped


def _number(obj: dict[str, Any], key: str, path: str, lo: float, hi: float) -> float:
    v = obj.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise ValueError(f"{path} must be a number")
    if not lo <= v <= hi:
        raise ValueError(f"{path} must be within [{lo}, {hi}]")
    return float(v)


def _optional_text(obj: dict[str, Any], key: str, path: str, max_len: int) -> Optional[str]:
    v = obj.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        raise ValueError(f"{path} must be a string")
    if len(v) > max_len:
        raise ValueError(f"{path} cannot exceed {max_len} characters")
    return v


def _parse_thoughts(raw: Any) -> Thoughts:
    if not isinstance(raw, dict):
        raise ValueError("thoughts must be an object")
    negatives = raw.get("negative_constraints_found") or []
    if not isinstance(negatives, list) or any(not isinstance(x, str) for x in negatives):
        raise ValueError("thoughts.negative_constraints_found must be a list[str]")
    return Thoughts(
        outcome_analysis=_text(raw, "outcome_analysis", "thoughts.outcome_analysis", min_len=10, max_len=1000),
        filtering_rationale=_text(raw, "filtering_rationale", "thoughts.filtering_rationale", min_len=10, max_len=1000),
        prioritization_strategy=_text(
            raw, "prioritization_strategy", "thoughts.prioritization_strategy", min_len=10, max_len=1000
        ),
        self_check_notes=_text(raw, "self_check_notes", "thoughts.self_check_notes", min_len=10, max_len=1000),
        negative_constraints_found=list(negatives),
    )


def _parse_score(task_id: str, raw: Any, inclusion_reason: Optional[str]) -> TaskScore:
    path = f"per_task_scores.{task_id}"
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must be an object")

    score_id = raw.get("task_id", task_id)
    if score_id != task_id:
        raise ValueError(f"{path}.task_id does not match its key ({score_id!r})")

    reasoning_raw = raw.get("reasoning")
    reasoning: Union[str, dict[str, Any]]
    if isinstance(reasoning_raw, dict):
        reasoning = dict(reasoning_raw)
    else:
        reasoning = _text(raw, "reasoning", f"{path}.reasoning", min_len=10, max_len=500, reject_generic=True)

    brief_raw = raw.get("brief_reasoning")
    if brief_raw is None:
        brief = brief_reasoning_fallback(task_id, inclusion_reason)
    else:
        brief = validate_brief_reasoning(brief_raw, f"{path}.brief_reasoning")

    deps = raw.get("dependencies") or []
    if not isinstance(deps, list) or any(not isinstance(d, str) or not d for d in deps):
        raise ValueError(f"{path}.dependencies must be a list of non-empty strings")

    return TaskScore(
        task_id=task_id,
        impact=_number(raw, "impact", f"{path}.impact", 0, 10),
        effort=_number(raw, "effort", f"{path}.effort", 0.5, 160),
        confidence=_number(raw, "confidence", f"{path}.confidence", 0, 1),
        reasoning=reasoning,
        brief_reasoning=brief,
        dependencies=list(deps),
        reflection_influence=_optional_text(raw, "reflection_influence", f"{path}.reflection_influence", 300),
    )


def parse_prioritization_result(obj: Any) -> PrioritizationResult:
    """Validate a generator response and build a PrioritizationResult.

    Raises ValueError naming the offending field on the first violation.
    Scores for tasks that were not included are dropped before validation;
    scores missing for included tasks are an error.
    """
    if not isinstance(obj, dict):
        raise ValueError("PrioritizationResult must be an object")

    thoughts = _parse_thoughts(obj.get("thoughts"))

    included_raw = obj.get("included_tasks")
    if not isinstance(included_raw, list) or not included_raw:
        raise ValueError("included_tasks must be a non-empty list")
    if len(included_raw) > 500:
        raise ValueError("included_tasks cannot exceed 500 items")

    included: list[IncludedTask] = []
    seen: set[str] = set()
    for i, item in enumerate(included_raw):
        path = f"included_tasks[{i}]"
        if not isinstance(item, dict):
            raise ValueError(f"{path} must be an object")
        tid = _text(item, "task_id", f"{path}.task_id")
        if tid in seen:
            raise ValueError(f"{path}.task_id is duplicated: {tid}")
        seen.add(tid)
        included.append(
            IncludedTask(
                task_id=tid,
                inclusion_reason=_text(
                    item, "inclusion_reason", f"{path}.inclusion_reason", min_len=10, max_len=300, reject_generic=True
                ),
                alignment_score=_number(item, "alignment_score", f"{path}.alignment_score", 0, 10),
            )
        )

    excluded_raw = obj.get("excluded_tasks", [])
    if not isinstance(excluded_raw, list):
        raise ValueError("excluded_tasks must be a list")
    excluded: list[ExcludedTask] = []
    for i, item in enumerate(excluded_raw):
        path = f"excluded_tasks[{i}]"
        if not isinstance(item, dict):
            raise ValueError(f"{path} must be an object")
        score = item.get("alignment_score")
        excluded.append(
            ExcludedTask(
                task_id=_text(item, "task_id", f"{path}.task_id"),
                exclusion_reason=_text(item, "exclusion_reason", f"{path}.exclusion_reason"),
                task_text=item.get("task_text") if isinstance(item.get("task_text"), str) else None,
                alignment_score=float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else None,
            )
        )

    ordered = obj.get("ordered_task_ids")
    if not isinstance(ordered, list) or any(not isinstance(x, str) or not x for x in ordered):
        raise ValueError("ordered_task_ids must be a list of non-empty strings")
    if len(set(ordered)) != len(ordered):
        raise ValueError("ordered_task_ids contains duplicates")
    if set(ordered) != seen:
        missing = sorted(seen - set(ordered))
        extra = sorted(set(ordered) - seen)
        raise ValueError(
            f"ordered_task_ids must match included_tasks exactly (missing={missing}, extra={extra})"
        )

    scores_raw = obj.get("per_task_scores")
    if not isinstance(scores_raw, dict):
        raise ValueError("per_task_scores must be an object")
    reasons = {t.task_id: t.inclusion_reason for t in included}
    scores: dict[str, TaskScore] = {}
    for t in included:
        if t.task_id not in scores_raw:
            raise ValueError(f"per_task_scores is missing an entry for included task {t.task_id}")
        scores[t.task_id] = _parse_score(t.task_id, scores_raw[t.task_id], reasons[t.task_id])

    return PrioritizationResult(
        thoughts=thoughts,
        included_tasks=included,
        excluded_tasks=excluded,
        ordered_task_ids=list(ordered),
        per_task_scores=scores,
        confidence=_number(obj, "confidence", "confidence", 0, 1),
        critical_path_reasoning=_text(
            obj, "critical_path_reasoning", "critical_path_reasoning", min_len=10, max_len=1000, reject_generic=True
        ),
        corrections_made=_optional_text(obj, "corrections_made", "corrections_made", 500),
    )


def parse_evaluation_result(obj: Any) -> EvaluationResult:
    if not isinstance(obj, dict):
        raise ValueError("EvaluationResult must be an object")

    status = obj.get("status")
    if status not in ("PASS", "NEEDS_IMPROVEMENT", "FAIL"):
        raise ValueError("status must be one of PASS, NEEDS_IMPROVEMENT, FAIL")

    feedback = obj.get("feedback", "")
    if not isinstance(feedback, str):
        raise ValueError("feedback must be a string")
    feedback = feedback.strip()
    if status != "PASS" and not feedback:
        raise ValueError(f"feedback is required when status is {status}")
    if len(feedback) > 2000:
        raise ValueError("feedback cannot exceed 2000 characters")

    criteria_raw = obj.get("criteria_scores")
    if not isinstance(criteria_raw, dict):
        raise ValueError("criteria_scores must be an object")
    criteria: dict[str, CriterionScore] = {}
    for name in CRITERIA:
        item = criteria_raw.get(name)
        if not isinstance(item, dict):
            raise ValueError(f"criteria_scores.{name} must be an object")
        criteria[name] = CriterionScore(
            score=_number(item, "score", f"criteria_scores.{name}.score", 0, 10),
            notes=_optional_text(item, "notes", f"criteria_scores.{name}.notes", 500),
        )

    duration = obj.get("evaluation_duration_ms", 0)
    if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
        raise ValueError("evaluation_duration_ms must be a non-negative number")

    model = obj.get("evaluator_model")
    return EvaluationResult(
        status=status,
        feedback=feedback,
        criteria_scores=criteria,
        evaluation_duration_ms=int(duration),
        evaluator_model=model if isinstance(model, str) and model else None,
    )


def result_to_dict(result: PrioritizationResult) -> dict[str, Any]:
    """Serialize a PrioritizationResult back to its wire shape."""
    t = result.thoughts
    return {
        "thoughts": {
            "outcome_analysis": t.outcome_analysis,
            "negative_constraints_found": list(t.negative_constraints_found),
            "filtering_rationale": t.filtering_rationale,
            "prioritization_strategy": t.prioritization_strategy,
            "self_check_notes": t.self_check_notes,
        },
        "included_tasks": [
            {"task_id": i.task_id, "inclusion_reason": i.inclusion_reason, "alignment_score": i.alignment_score}
            for i in result.included_tasks
        ],
        "excluded_tasks": [
            {
                "task_id": e.task_id,
                "task_text": e.task_text,
                "exclusion_reason": e.exclusion_reason,
                "alignment_score": e.alignment_score,
            }
            for e in result.excluded_tasks
        ],
        "ordered_task_ids": list(result.ordered_task_ids),
        "per_task_scores": {
            tid: {
                "task_id": s.task_id,
                "impact": s.impact,
                "effort": s.effort,
                "confidence": s.confidence,
                "reasoning": s.reasoning,
                "brief_reasoning": s.brief_reasoning,
                "dependencies": list(s.dependencies),
                "reflection_influence": s.reflection_influence,
            }
            for tid, s in result.per_task_scores.items()
        },
        "confidence": result.confidence,
        "critical_path_reasoning": result.critical_path_reasoning,
        "corrections_made": result.corrections_made,
    }

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Optional


TaskSource = Literal["embedding", "manual", "bridging"]
DetectionMethod = Literal["manual", "ai_inference", "stored_relationship"]
DraftSource = Literal["phase10_semantic", "phase5_dependency"]
CognitionLevel = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class TaskSummary:
    task_id: str
    task_text: str
    document_id: Optional[str] = None
    source: str = "embedding"
    manual_override: bool = False
    previous_rank: Optional[int] = None


@dataclass(frozen=True)
class Reflection:
    id: str
    text: str
    created_at: datetime
    is_active: bool = True
    user_id: Optional[str] = None


@dataclass(frozen=True)
class DependencyEdge:
    source_task_id: str
    target_task_id: str
    relationship_type: str = "prerequisite"
    confidence: float = 1.0
    detection_method: DetectionMethod = "manual"

    def as_pair(self) -> tuple[str, str]:
        return (self.source_task_id, self.target_task_id)


@dataclass(frozen=True)
class TaskAnnotation:
    task_id: str
    reasoning: str
    confidence: Optional[float] = None


@dataclass(frozen=True)
class RemovedTask:
    task_id: str
    removal_reason: str


@dataclass(frozen=True)
class ExecutionWave:
    wave_number: int
    task_ids: list[str]
    parallel_execution: bool = False


@dataclass(frozen=True)
class PrioritizedPlan:
    """Plan shape exchanged with callers (API/UI layers persist this)."""

    ordered_task_ids: list[str]
    confidence_scores: dict[str, float]
    dependencies: list[DependencyEdge] = field(default_factory=list)
    task_annotations: list[TaskAnnotation] = field(default_factory=list)
    removed_tasks: list[RemovedTask] = field(default_factory=list)
    execution_waves: list[ExecutionWave] = field(default_factory=list)
    synthesis_summary: str = ""
    created_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordered_task_ids": list(self.ordered_task_ids),
            "confidence_scores": dict(self.confidence_scores),
            "dependencies": [
                {
                    "source_task_id": d.source_task_id,
                    "target_task_id": d.target_task_id,
                    "relationship_type": d.relationship_type,
                    "confidence": d.confidence,
                    "detection_method": d.detection_method,
                }
                for d in self.dependencies
            ],
            "task_annotations": [
                {"task_id": a.task_id, "reasoning": a.reasoning, "confidence": a.confidence}
                for a in self.task_annotations
            ],
            "removed_tasks": [
                {"task_id": r.task_id, "removal_reason": r.removal_reason}
                for r in self.removed_tasks
            ],
            "execution_waves": [
                {
                    "wave_number": w.wave_number,
                    "task_ids": list(w.task_ids),
                    "parallel_execution": w.parallel_execution,
                }
                for w in self.execution_waves
            ],
            "synthesis_summary": self.synthesis_summary,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class MovedTask:
    task_id: str
    from_rank: int
    to_rank: int
    reason: str


@dataclass(frozen=True)
class FilteredTask:
    task_id: str
    reason: str


@dataclass(frozen=True)
class AdjustmentDiff:
    moved: list[MovedTask]
    filtered: list[FilteredTask]


@dataclass(frozen=True)
class ReflectionWeight:
    id: str
    text: str
    recency_weight: float
    created_at: str


@dataclass(frozen=True)
class AdjustmentMetadata:
    reflections: list[ReflectionWeight]
    tasks_moved: int
    tasks_filtered: int
    duration_ms: int


@dataclass(frozen=True)
class AdjustedPlan:
    ordered_task_ids: list[str]
    confidence_scores: dict[str, float]
    diff: AdjustmentDiff
    adjustment_metadata: AdjustmentMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "ordered_task_ids": list(self.ordered_task_ids),
            "confidence_scores": dict(self.confidence_scores),
            "diff": {
                "moved": [
                    {"task_id": m.task_id, "from": m.from_rank, "to": m.to_rank, "reason": m.reason}
                    for m in self.diff.moved
                ],
                "filtered": [
                    {"task_id": f.task_id, "reason": f.reason} for f in self.diff.filtered
                ],
            },
            "adjustment_metadata": {
                "reflections": [
                    {
                        "id": r.id,
                        "text": r.text,
                        "recency_weight": r.recency_weight,
                        "created_at": r.created_at,
                    }
                    for r in self.adjustment_metadata.reflections
                ],
                "tasks_moved": self.adjustment_metadata.tasks_moved,
                "tasks_filtered": self.adjustment_metadata.tasks_filtered,
                "duration_ms": self.adjustment_metadata.duration_ms,
            },
        }


@dataclass(frozen=True)
class DraftTask:
    id: str
    task_text: str
    estimated_hours: float
    cognition_level: CognitionLevel
    reasoning: str
    confidence_score: float
    source: DraftSource
    embedding: list[float]
    deduplication_hash: str
    gap_area: Optional[str] = None


@dataclass(frozen=True)
class BridgingTask:
    id: str
    task_text: str
    estimated_hours: int
    predecessor_id: str
    successor_id: str

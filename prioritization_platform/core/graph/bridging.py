from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from prioritization_platform.core.embeddings.provider import EmbeddingProvider
from prioritization_platform.core.embeddings.similarity import cosine_similarity
from prioritization_platform.core.errors import DuplicateTaskError, TaskInsertionError
from prioritization_platform.core.graph.cycles import EdgeLike, check_edge_batch
from prioritization_platform.core.model import BridgingTask, DependencyEdge


log = logging.getLogger("prioritization_platform.bridging")

MIN_TEXT_LENGTH = 10
MAX_TEXT_LENGTH = 500
MIN_HOURS = 8
MAX_HOURS = 160


@dataclass(frozen=True)
class ExistingTask:
    task_id: str
    task_text: str
    embedding: Optional[list[float]] = None


@dataclass(frozen=True)
class InsertionPlan:
    """What the caller writes in one transaction: the new tasks and their two edges each."""

    tasks: list[BridgingTask]
    edges: list[DependencyEdge]
    embeddings: dict[str, list[float]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "tasks": [
                {
                    "id": t.id,
                    "task_text": t.task_text,
                    "estimated_hours": t.estimated_hours,
                    "predecessor_id": t.predecessor_id,
                    "successor_id": t.successor_id,
                }
                for t in self.tasks
            ],
            "edges": [
                {"source_task_id": e.source_task_id, "target_task_id": e.target_task_id}
                for e in self.edges
            ],
        }


def _invalid(message: str, *, path: str, details: tuple[str, ...] = ()) -> TaskInsertionError:
    return TaskInsertionError(code="E_VALIDATION", message=message, path=path, details=details)


def normalize_bridging_task(task: BridgingTask, index: int = 0) -> BridgingTask:
    """Trimmed copy of `task`; raises TaskInsertionError (E_VALIDATION) on bad fields."""
    path = f"tasks[{index}]"
    task_id = (task.id or "").strip()
    if not task_id:
        raise _invalid("task id is required", path=f"{path}.id")

    predecessor = (task.predecessor_id or "").strip()
    successor = (task.successor_id or "").strip()
    if not predecessor or not successor:
        raise _invalid(
            "predecessor and successor ids are required", path=f"{path}.predecessor_id"
        )

    text = (task.task_text or "").strip()
    if not MIN_TEXT_LENGTH <= len(text) <= MAX_TEXT_LENGTH:
        raise _invalid(
            f"task {task_id} has invalid description length",
            path=f"{path}.task_text",
            details=(
                f"task {task_id} description must be between {MIN_TEXT_LENGTH} and "
                f"{MAX_TEXT_LENGTH} characters",
            ),
        )

    hours = task.estimated_hours
    if isinstance(hours, bool) or not isinstance(hours, int) or not MIN_HOURS <= hours <= MAX_HOURS:
        raise _invalid(
            f"task {task_id} has invalid estimated hours",
            path=f"{path}.estimated_hours",
            details=(
                f"task {task_id} estimated hours must be an integer between {MIN_HOURS} and "
                f"{MAX_HOURS}",
            ),
        )

    return BridgingTask(
        id=task_id,
        task_text=text,
        estimated_hours=hours,
        predecessor_id=predecessor,
        successor_id=successor,
    )


async def plan_bridging_insertion(
    tasks: Sequence[BridgingTask],
    edges: Sequence[EdgeLike],
    existing: Sequence[ExistingTask],
    embedder: Optional[EmbeddingProvider] = None,
    *,
    duplicate_threshold: float = 0.9,
) -> InsertionPlan:
    """Validate accepted bridging tasks and build the edges that wire them in.

    Every check runs before anything is returned, so a rejection leaves nothing
    to roll back. Duplicate detection needs `embedder`; without one it is skipped.
    """
    if not tasks:
        raise _invalid("no tasks provided for insertion", path="tasks")

    normalized = [normalize_bridging_task(t, i) for i, t in enumerate(tasks)]
    known = {t.task_id: t for t in existing}

    seen: set[str] = set()
    for i, t in enumerate(normalized):
        if t.id in known or t.id in seen:
            raise _invalid(
                f"task identifier already exists: {t.id}", path=f"tasks[{i}].id"
            )
        seen.add(t.id)

    missing: list[str] = []
    for t in normalized:
        for ref in (t.predecessor_id, t.successor_id):
            if ref not in known and ref not in missing:
                missing.append(ref)
    if missing:
        raise TaskInsertionError(
            code="E_TASK_NOT_FOUND",
            message="referenced tasks not found: " + ", ".join(missing),
            path="tasks",
        )

    embeddings: dict[str, list[float]] = {}
    if embedder is not None:
        vectors = await embedder.embed_batch([t.task_text for t in normalized])
        embeddings = {t.id: list(v) for t, v in zip(normalized, vectors)}
        _check_duplicates(normalized, embeddings, existing, duplicate_threshold)

    new_edges: list[DependencyEdge] = []
    for t in normalized:
        new_edges.append(DependencyEdge(source_task_id=t.predecessor_id, target_task_id=t.id))
        new_edges.append(DependencyEdge(source_task_id=t.id, target_task_id=t.successor_id))

    check_edge_batch(edges, new_edges)

    log.info(
        "bridging insertion planned | tasks=%d | edges=%d", len(normalized), len(new_edges)
    )
    return InsertionPlan(tasks=normalized, edges=new_edges, embeddings=embeddings)


def _check_duplicates(
    tasks: Sequence[BridgingTask],
    embeddings: dict[str, list[float]],
    existing: Sequence[ExistingTask],
    threshold: float,
) -> None:
    candidates = [e for e in existing if e.embedding]
    for t in tasks:
        best: Optional[ExistingTask] = None
        best_sim = 0.0
        for e in candidates:
            sim = cosine_similarity(embeddings[t.id], e.embedding or [])
            if sim >= threshold and (best is None or sim > best_sim):
                best, best_sim = e, sim
        if best is not None:
            raise DuplicateTaskError(
                code="E_DUPLICATE_TASK",
                message="duplicate task detected",
                path=f"tasks.{t.id}",
                details=(
                    f"task '{t.task_text}' duplicates existing task '{best.task_text}' "
                    f"(similarity: {best_sim:.2f})",
                ),
                task_id=t.id,
                existing_task_id=best.task_id,
                similarity=best_sim,
            )

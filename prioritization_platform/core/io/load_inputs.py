from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from prioritization_platform.core.drafts.dedupe import deduplication_hash
from prioritization_platform.core.errors import InputLoadError
from prioritization_platform.core.graph.bridging import ExistingTask
from prioritization_platform.core.model import (
    BridgingTask,
    DependencyEdge,
    DraftTask,
    PrioritizedPlan,
    Reflection,
    TaskSummary,
)


def load_document(path: str) -> dict[str, Any]:
    """Load a YAML/JSON input file whose top level is a mapping."""

    p = Path(path)
    if not p.exists():
        raise InputLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", file=str(p))

    suffix = p.suffix.lower()
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise InputLoadError(code="E_FILE_READ", message=str(e), file=str(p)) from e

    if suffix in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(raw_text)
        except yaml.YAMLError as e:
            raise InputLoadError(code="E_YAML_PARSE", message=str(e), file=str(p)) from e
    elif suffix == ".json":
        try:
            data = json.loads(raw_text)
        except json.JSONDecodeError as e:
            raise InputLoadError(code="E_JSON_PARSE", message=str(e), file=str(p)) from e
    else:
        raise InputLoadError(
            code="E_UNSUPPORTED_FORMAT",
            message="supported formats are .yaml/.yml and .json",
            file=str(p),
        )

    if not isinstance(data, dict):
        raise InputLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be a mapping/object",
            file=str(p),
        )

    data["__file__"] = str(p)
    return data


def _bad(doc: dict[str, Any], path: str, message: str) -> InputLoadError:
    return InputLoadError(code="E_INVALID_FIELD", message=message, file=doc.get("__file__"), path=path)


def _list(doc: dict[str, Any], key: str, *, required: bool = True) -> list[Any]:
    raw = doc.get(key)
    if raw is None and not required:
        return []
    if not isinstance(raw, list):
        raise _bad(doc, key, f"{key} must be a list")
    return raw


def _str(doc: dict[str, Any], item: dict[str, Any], keys: tuple[str, ...], path: str) -> str:
    for k in keys:
        v = item.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    raise _bad(doc, f"{path}.{keys[0]}", f"{keys[0]} must be a non-empty string")


def _mapping(doc: dict[str, Any], item: Any, path: str) -> dict[str, Any]:
    if not isinstance(item, dict):
        raise _bad(doc, path, "must be a mapping/object")
    return item


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string (a trailing Z is accepted) or a YAML-parsed date/datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def parse_tasks(doc: dict[str, Any], key: str = "tasks") -> list[TaskSummary]:
    out: list[TaskSummary] = []
    seen: set[str] = set()
    for i, raw in enumerate(_list(doc, key)):
        path = f"{key}[{i}]"
        item = _mapping(doc, raw, path)
        task_id = _str(doc, item, ("task_id", "id"), path)
        if task_id in seen:
            raise _bad(doc, f"{path}.task_id", f"duplicate task id: {task_id}")
        seen.add(task_id)

        previous_rank = item.get("previous_rank")
        if previous_rank is not None and (isinstance(previous_rank, bool) or not isinstance(previous_rank, int)):
            raise _bad(doc, f"{path}.previous_rank", "previous_rank must be an integer")

        out.append(
            TaskSummary(
                task_id=task_id,
                task_text=_str(doc, item, ("task_text", "text"), path),
                document_id=item.get("document_id") if isinstance(item.get("document_id"), str) else None,
                source=str(item.get("source") or "embedding"),
                manual_override=bool(item.get("manual_override", False)),
                previous_rank=previous_rank,
            )
        )
    return out


def parse_reflections(doc: dict[str, Any], key: str = "reflections") -> list[Reflection]:
    out: list[Reflection] = []
    for i, raw in enumerate(_list(doc, key, required=False)):
        path = f"{key}[{i}]"
        item = _mapping(doc, raw, path)
        created_at = parse_timestamp(item.get("created_at"))
        if created_at is None:
            raise _bad(doc, f"{path}.created_at", "created_at must be an ISO-8601 timestamp")
        out.append(
            Reflection(
                id=_str(doc, item, ("id",), path),
                text=str(item.get("text") or ""),
                created_at=created_at,
                is_active=bool(item.get("is_active", True)),
                user_id=item.get("user_id") if isinstance(item.get("user_id"), str) else None,
            )
        )
    return out


def parse_reflection_texts(doc: dict[str, Any], key: str = "reflections") -> list[str]:
    """Reflections as plain strings; mapping entries contribute their active text."""
    out: list[str] = []
    for i, raw in enumerate(_list(doc, key, required=False)):
        if isinstance(raw, str):
            if raw.strip():
                out.append(raw.strip())
            continue
        item = _mapping(doc, raw, f"{key}[{i}]")
        text = item.get("text")
        if item.get("is_active", True) and isinstance(text, str) and text.strip():
            out.append(text.strip())
    return out


def parse_edges(doc: dict[str, Any], key: str = "edges") -> list[DependencyEdge]:
    out: list[DependencyEdge] = []
    for i, raw in enumerate(_list(doc, key, required=False)):
        path = f"{key}[{i}]"
        if isinstance(raw, list):
            if len(raw) != 2 or not all(isinstance(x, str) and x for x in raw):
                raise _bad(doc, path, "edge pairs must be [source, target]")
            out.append(DependencyEdge(source_task_id=raw[0], target_task_id=raw[1]))
            continue

        item = _mapping(doc, raw, path)
        confidence = item.get("confidence", 1.0)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise _bad(doc, f"{path}.confidence", "confidence must be a number")
        out.append(
            DependencyEdge(
                source_task_id=_str(doc, item, ("source_task_id", "source"), path),
                target_task_id=_str(doc, item, ("target_task_id", "target"), path),
                relationship_type=str(item.get("relationship_type") or "prerequisite"),
                confidence=float(confidence),
                detection_method=item.get("detection_method") or "manual",
            )
        )
    return out


def parse_plan(doc: dict[str, Any], key: str = "plan") -> PrioritizedPlan:
    raw = doc.get(key)
    item = _mapping(doc, raw, key)

    ordered = item.get("ordered_task_ids")
    if not isinstance(ordered, list) or not all(isinstance(x, str) for x in ordered):
        raise _bad(doc, f"{key}.ordered_task_ids", "ordered_task_ids must be a list of strings")

    scores_raw = item.get("confidence_scores") or {}
    if not isinstance(scores_raw, dict):
        raise _bad(doc, f"{key}.confidence_scores", "confidence_scores must be a mapping")
    scores: dict[str, float] = {}
    for tid, v in scores_raw.items():
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise _bad(doc, f"{key}.confidence_scores.{tid}", "confidence must be a number")
        scores[str(tid)] = float(v)

    return PrioritizedPlan(
        ordered_task_ids=list(ordered),
        confidence_scores=scores,
        dependencies=parse_edges(item, "dependencies") if "dependencies" in item else [],
        synthesis_summary=str(item.get("synthesis_summary") or ""),
        created_at=item.get("created_at") if isinstance(item.get("created_at"), str) else None,
    )


def _vector(doc: dict[str, Any], raw: Any, path: str) -> list[float]:
    if not isinstance(raw, list) or not all(
        isinstance(x, (int, float)) and not isinstance(x, bool) for x in raw
    ):
        raise _bad(doc, path, "embedding must be a list of numbers")
    return [float(x) for x in raw]


def parse_drafts(doc: dict[str, Any], key: str, source: str) -> list[DraftTask]:
    out: list[DraftTask] = []
    for i, raw in enumerate(_list(doc, key, required=False)):
        path = f"{key}[{i}]"
        item = _mapping(doc, raw, path)
        text = _str(doc, item, ("task_text", "text"), path)
        out.append(
            DraftTask(
                id=_str(doc, item, ("id",), path),
                task_text=text,
                estimated_hours=float(item.get("estimated_hours") or 0),
                cognition_level=item.get("cognition_level") or "medium",
                reasoning=str(item.get("reasoning") or ""),
                confidence_score=float(item.get("confidence_score") or 0),
                source=source,
                embedding=_vector(doc, item.get("embedding"), f"{path}.embedding"),
                deduplication_hash=item.get("deduplication_hash") or deduplication_hash(text),
                gap_area=item.get("gap_area") if isinstance(item.get("gap_area"), str) else None,
            )
        )
    return out


def parse_bridging_tasks(doc: dict[str, Any], key: str = "bridging_tasks") -> list[BridgingTask]:
    out: list[BridgingTask] = []
    for i, raw in enumerate(_list(doc, key)):
        item = _mapping(doc, raw, f"{key}[{i}]")
        out.append(
            BridgingTask(
                id=str(item.get("id") or ""),
                task_text=str(item.get("task_text") or ""),
                estimated_hours=item.get("estimated_hours"),
                predecessor_id=str(item.get("predecessor_id") or ""),
                successor_id=str(item.get("successor_id") or ""),
            )
        )
    return out


def parse_existing_tasks(doc: dict[str, Any], key: str = "tasks") -> list[ExistingTask]:
    out: list[ExistingTask] = []
    for i, raw in enumerate(_list(doc, key)):
        path = f"{key}[{i}]"
        item = _mapping(doc, raw, path)
        embedding = item.get("embedding")
        out.append(
            ExistingTask(
                task_id=_str(doc, item, ("task_id", "id"), path),
                task_text=str(item.get("task_text") or item.get("text") or ""),
                embedding=_vector(doc, embedding, f"{path}.embedding") if embedding is not None else None,
            )
        )
    return out


def task_texts(tasks: list[TaskSummary]) -> dict[str, str]:
    return {t.task_id: t.task_text for t in tasks}

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, NoReturn, Optional

import typer

from prioritization_platform.core.ai.llm import OpenAIAgent
from prioritization_platform.core.ai.orchestrator import prioritize
from prioritization_platform.core.ai.prompts import EVALUATOR_SYSTEM, GENERATOR_SYSTEM
from prioritization_platform.core.config import LoopConfig, load_config
from prioritization_platform.core.drafts.dedupe import dedupe
from prioritization_platform.core.embeddings.provider import (
    EmbeddingTask,
    OpenAIEmbeddingProvider,
)
from prioritization_platform.core.embeddings.queue import EmbeddingQueue
from prioritization_platform.core.errors import (
    ConfigError,
    InputLoadError,
    PrioritizationError,
)
from prioritization_platform.core.graph.bridging import plan_bridging_insertion
from prioritization_platform.core.graph.cycles import check_edge_batch
from prioritization_platform.core.io.load_inputs import (
    load_document,
    parse_bridging_tasks,
    parse_drafts,
    parse_edges,
    parse_existing_tasks,
    parse_plan,
    parse_reflection_texts,
    parse_reflections,
    parse_tasks,
    parse_timestamp,
    task_texts,
)
from prioritization_platform.core.logging_config import setup_logging
from prioritization_platform.core.model import DependencyEdge
from prioritization_platform.core.ranking.adjust import adjust
from prioritization_platform.core.ranking.recency import format_relative_time, recency_weight

app = typer.Typer(add_completion=False, no_args_is_help=True)


@app.callback()
def _callback(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ...); default: PRIORITIZATION_LOG_LEVEL or WARNING",
    ),
) -> None:
    """Task prioritization CLI."""
    try:
        setup_logging(log_level)
    except ConfigError as e:
        _fail("main", "text", [e])


def _check_format(command: str, format: str) -> None:
    if format not in ("text", "json"):
        err = PrioritizationError(
            code="E_UNKNOWN_FORMAT",
            message=f"unknown format: {format} (choose one of: text, json)",
            path="format",
        )
        _fail(command, "text", [err], exit_code=2)


def _emit_json(command: str, *, ok: bool, exit_code: int, errors: list[PrioritizationError], result: Any) -> None:
    payload = {
        "tool": "prioritize-cli",
        "command": command,
        "ok": ok,
        "error_count": len(errors),
        "errors": [
            {**e.to_dict(), "source": "load" if isinstance(e, InputLoadError) else "validate"}
            for e in errors
        ],
        "result": result,
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))
    raise typer.Exit(code=exit_code)


def _fail(
    command: str, format: str, errors: list[PrioritizationError], *, exit_code: Optional[int] = None
) -> NoReturn:
    if exit_code is None:
        exit_code = 1 if all(isinstance(e, (InputLoadError, ConfigError)) for e in errors) else 2
    if format == "json":
        _emit_json(command, ok=False, exit_code=exit_code, errors=errors, result=None)
    _print_errors(errors)
    raise typer.Exit(code=exit_code)


def _require_api_key(command: str, format: str) -> None:
    if not os.getenv("OPENAI_API_KEY"):
        err = PrioritizationError(
            code="E_NO_API_KEY", message="OPENAI_API_KEY is not set", path="OPENAI_API_KEY"
        )
        _fail(command, format, [err], exit_code=2)


def _load_config(command: str, format: str, config_path: Optional[str]) -> LoopConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        _fail(command, format, [e])


@app.command("prioritize")
def prioritize_cmd(
    path: str = typer.Argument(..., help="Input file with outcome, tasks and reflections (.yaml/.yml/.json)"),
    config_path: Optional[str] = typer.Option(None, "--config", help="YAML file of LoopConfig overrides"),
    base_url: Optional[str] = typer.Option(None, "--base-url"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Rank tasks against an outcome with the generator/evaluator loop."""
    command = "prioritize"
    _check_format(command, format)
    _require_api_key(command, format)
    cfg = _load_config(command, format, config_path)

    try:
        doc = load_document(path)
        tasks = parse_tasks(doc)
        reflections = parse_reflection_texts(doc)
        overrides = parse_edges(doc, "dependency_overrides")
        previous = parse_plan(doc, "previous_plan") if doc.get("previous_plan") is not None else None
    except InputLoadError as e:
        _fail(command, format, [e])

    outcome = doc.get("outcome")
    if not isinstance(outcome, str) or not outcome.strip():
        err = InputLoadError(
            code="E_INVALID_FIELD",
            message="outcome must be a non-empty string",
            file=doc.get("__file__"),
            path="outcome",
        )
        _fail(command, format, [err])
    if not tasks:
        err = InputLoadError(
            code="E_INVALID_FIELD",
            message="at least one task is required",
            file=doc.get("__file__"),
            path="tasks",
        )
        _fail(command, format, [err])

    generator = OpenAIAgent(
        role="generator", system_prompt=GENERATOR_SYSTEM, default_model=cfg.generator_model, base_url=base_url
    )
    evaluator = OpenAIAgent(
        role="evaluator", system_prompt=EVALUATOR_SYSTEM, default_model=cfg.evaluator_model, base_url=base_url
    )

    try:
        result = asyncio.run(
            prioritize(
                tasks,
                outcome,
                reflections,
                previous,
                generator=generator,
                evaluator=evaluator,
                dependency_overrides=overrides,
                config=cfg,
            )
        )
    except PrioritizationError as e:
        _fail(command, format, [e])

    if format == "json":
        _emit_json(
            command,
            ok=True,
            exit_code=0,
            errors=[],
            result={"plan": result.plan.to_dict(), "metadata": result.metadata.to_dict()},
        )

    meta = result.metadata
    status = "converged" if meta.converged else "NOT converged (best effort)"
    typer.echo(
        f"OK: {len(result.plan.ordered_task_ids)} tasks ranked "
        f"(iterations={meta.iterations}, confidence={meta.final_confidence:.2f}, {status})"
    )
    texts = task_texts(tasks)
    for rank, tid in enumerate(result.plan.ordered_task_ids, start=1):
        typer.echo(f"{rank:>3}. [{tid}] {texts.get(tid, '')}")
    for removed in result.plan.removed_tasks:
        typer.echo(f"  - excluded [{removed.task_id}]: {removed.removal_reason}")


@app.command("adjust")
def adjust_cmd(
    path: str = typer.Argument(..., help="Input file with plan, tasks and reflections"),
    user_id: str = typer.Option(..., "--user-id"),
    reflection: Optional[list[str]] = typer.Option(None, "--reflection", help="Active reflection id (repeatable)"),
    now: Optional[str] = typer.Option(None, "--now", help="Reference time (ISO-8601), default: current time"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Re-rank a plan against the active reflections (no LLM call)."""
    command = "adjust"
    _check_format(command, format)

    try:
        doc = load_document(path)
        plan = parse_plan(doc)
        texts = task_texts(parse_tasks(doc)) if doc.get("tasks") is not None else {}
        reflections = parse_reflections(doc)
    except InputLoadError as e:
        _fail(command, format, [e])

    reference = parse_timestamp(now) if now else None
    if now and reference is None:
        err = PrioritizationError(code="E_INVALID_TIMESTAMP", message=f"invalid --now: {now}", path="now")
        _fail(command, format, [err])

    try:
        adjusted = asyncio.run(
            adjust(
                user_id,
                plan,
                reflection or [],
                reflections=reflections,
                task_texts=texts,
                now=reference,
            )
        )
    except PrioritizationError as e:
        _fail(command, format, [e])

    if format == "json":
        _emit_json(command, ok=True, exit_code=0, errors=[], result=adjusted.to_dict())

    typer.echo(
        f"OK: moved={adjusted.adjustment_metadata.tasks_moved} "
        f"filtered={adjusted.adjustment_metadata.tasks_filtered}"
    )
    for rank, tid in enumerate(adjusted.ordered_task_ids, start=1):
        typer.echo(f"{rank:>3}. {tid} ({adjusted.confidence_scores.get(tid, 0.0):.3f})")
    for m in adjusted.diff.moved:
        typer.echo(f"  ~ {m.task_id}: {m.from_rank} -> {m.to_rank} ({m.reason})")
    for f in adjusted.diff.filtered:
        typer.echo(f"  - {f.task_id}: {f.reason}")


@app.command("check-edge")
def check_edge_cmd(
    path: str = typer.Argument(..., help="File with existing edges"),
    source: str = typer.Argument(...),
    target: str = typer.Argument(...),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Check whether adding SOURCE -> TARGET would create a dependency cycle."""
    command = "check-edge"
    _check_format(command, format)

    try:
        edges = parse_edges(load_document(path))
    except InputLoadError as e:
        _fail(command, format, [e])

    try:
        check_edge_batch(edges, [DependencyEdge(source_task_id=source, target_task_id=target)])
    except PrioritizationError as e:
        _fail(command, format, [e])

    if format == "json":
        _emit_json(command, ok=True, exit_code=0, errors=[], result={"source": source, "target": target})
    typer.echo(f"OK: {source} -> {target} keeps the graph acyclic")


@app.command("bridge")
def bridge_cmd(
    path: str = typer.Argument(..., help="File with tasks, edges and bridging_tasks"),
    check_duplicates: bool = typer.Option(
        False, "--check-duplicates", help="Embed new tasks (OpenAI) and reject near-duplicates"
    ),
    config_path: Optional[str] = typer.Option(None, "--config"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Validate accepted bridging tasks and print the edges that wire them in."""
    command = "bridge"
    _check_format(command, format)
    if check_duplicates:
        _require_api_key(command, format)
    cfg = _load_config(command, format, config_path)

    try:
        doc = load_document(path)
        existing = parse_existing_tasks(doc)
        edges = parse_edges(doc)
        new_tasks = parse_bridging_tasks(doc)
    except InputLoadError as e:
        _fail(command, format, [e])

    embedder = None
    if check_duplicates:
        embedder = OpenAIEmbeddingProvider(
            model=cfg.embedding_model,
            dimensions=cfg.embedding_dimensions,
            timeout_s=cfg.embedding_timeout_s,
        )

    try:
        insertion = asyncio.run(
            plan_bridging_insertion(
                new_tasks,
                edges,
                existing,
                embedder,
                duplicate_threshold=cfg.duplicate_threshold,
            )
        )
    except PrioritizationError as e:
        _fail(command, format, [e])

    if format == "json":
        _emit_json(command, ok=True, exit_code=0, errors=[], result=insertion.to_dict())
    typer.echo(f"OK: {len(insertion.tasks)} tasks, {len(insertion.edges)} edges")
    for e in insertion.edges:
        typer.echo(f"  {e.source_task_id} -> {e.target_task_id}")


@app.command("dedupe")
def dedupe_cmd(
    path: str = typer.Argument(..., help="File with primary and secondary draft lists"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Suppress above this similarity"),
    config_path: Optional[str] = typer.Option(None, "--config"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Merge two draft batches, dropping secondary drafts too close to a primary one."""
    command = "dedupe"
    _check_format(command, format)
    cfg = _load_config(command, format, config_path)

    try:
        doc = load_document(path)
        primary = parse_drafts(doc, "primary", "phase10_semantic")
        secondary = parse_drafts(doc, "secondary", "phase5_dependency")
    except InputLoadError as e:
        _fail(command, format, [e])

    try:
        result = dedupe(primary, secondary, cfg.dedupe_threshold if threshold is None else threshold)
    except ValueError as e:
        err = InputLoadError(code="E_INVALID_FIELD", message=str(e), file=doc.get("__file__"), path="embedding")
        _fail(command, format, [err])

    stats = result.stats
    if format == "json":
        _emit_json(
            command,
            ok=True,
            exit_code=0,
            errors=[],
            result={
                "draft_ids": [d.id for d in result.drafts],
                "stats": {
                    "phase10_count": stats.phase10_count,
                    "phase5_total": stats.phase5_total,
                    "phase5_suppressed": stats.phase5_suppressed,
                    "final_count": stats.final_count,
                },
            },
        )
    typer.echo(
        f"OK: kept {stats.final_count} drafts "
        f"(primary={stats.phase10_count}, secondary={stats.phase5_total}, suppressed={stats.phase5_suppressed})"
    )
    for d in result.drafts:
        typer.echo(f"  [{d.source}] {d.id}: {d.task_text}")


@app.command("embed")
def embed_cmd(
    path: str = typer.Argument(..., help="File with a tasks list"),
    document_id: str = typer.Option(..., "--document-id"),
    config_path: Optional[str] = typer.Option(None, "--config"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Generate embeddings for a document's tasks through the batching queue."""
    command = "embed"
    _check_format(command, format)
    _require_api_key(command, format)
    cfg = _load_config(command, format, config_path)

    try:
        tasks = parse_tasks(load_document(path))
    except InputLoadError as e:
        _fail(command, format, [e])

    queue = EmbeddingQueue(
        OpenAIEmbeddingProvider(
            model=cfg.embedding_model,
            dimensions=cfg.embedding_dimensions,
            timeout_s=cfg.embedding_timeout_s,
        ),
        batch_size=cfg.batch_size,
        max_concurrent_batches=cfg.max_concurrent_batches,
    )
    items = [
        EmbeddingTask(
            task_id=t.task_id,
            task_text=t.task_text,
            document_id=document_id,
        )
        for t in tasks
    ]
    result = asyncio.run(queue.enqueue(items, document_id))

    if format == "json":
        _emit_json(command, ok=True, exit_code=0, errors=[], result=result.to_dict())
    typer.echo(
        f"OK: success={result.success} pending={result.pending} "
        f"failed={result.failed} ({result.duration_ms} ms)"
    )


@app.command("recency")
def recency_cmd(
    created_at: str = typer.Argument(..., help="Reflection timestamp (ISO-8601)"),
    now: Optional[str] = typer.Option(None, "--now", help="Reference time (ISO-8601)"),
) -> None:
    """Print the recency weight of a reflection created at CREATED_AT."""
    ts = parse_timestamp(created_at)
    reference = parse_timestamp(now) if now else None
    if ts is None or (now and reference is None):
        err = PrioritizationError(
            code="E_INVALID_TIMESTAMP",
            message="timestamps must be ISO-8601",
            path="created_at" if ts is None else "now",
        )
        _fail("recency", "text", [err])
    typer.echo(f"{recency_weight(ts, reference)} ({format_relative_time(ts, reference)})")


def _print_errors(errors: list[PrioritizationError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)
        for line in e.details:
            typer.echo(f"  {line}", err=True)


def main() -> None:
    app(prog_name="prioritize-cli")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()

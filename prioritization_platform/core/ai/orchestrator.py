from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Literal, Optional, Sequence

from prioritization_platform.core.ai.contracts import (
    EvaluationResult,
    PrioritizationResult,
    parse_evaluation_result,
    parse_json_payload,
    parse_prioritization_result,
    result_to_dict,
)
from prioritization_platform.core.ai.llm import Agent
from prioritization_platform.core.ai.prompts import (
    GeneratorContext,
    build_generator_context,
    render_evaluator_prompt,
    render_generator_prompt,
)
from prioritization_platform.core.config import DEFAULT_CONFIG, LoopConfig
from prioritization_platform.core.errors import GeneratorValidationError
from prioritization_platform.core.model import (
    DependencyEdge,
    ExecutionWave,
    PrioritizedPlan,
    RemovedTask,
    TaskAnnotation,
    TaskSummary,
)


log = logging.getLogger("prioritization_platform.loop")

MAX_ITERATIONS = 3

Stage = Literal["started", "draft", "refining", "completed"]


@dataclass(frozen=True)
class ChainOfThoughtStep:
    iteration: int
    confidence: float
    corrections: str
    timestamp: str
    evaluator_feedback: Optional[str] = None


@dataclass(frozen=True)
class LoopMetadata:
    iterations: int
    duration_ms: int
    evaluation_triggered: bool
    chain_of_thought: list[ChainOfThoughtStep]
    converged: bool
    final_confidence: float

    def to_dict(self) -> dict:
        return {
            "iterations": self.iterations,
            "duration_ms": self.duration_ms,
            "evaluation_triggered": self.evaluation_triggered,
            "converged": self.converged,
            "final_confidence": self.final_confidence,
            "chain_of_thought": [
                {
                    "iteration": s.iteration,
                    "confidence": s.confidence,
                    "corrections": s.corrections,
                    "evaluator_feedback": s.evaluator_feedback,
                    "timestamp": s.timestamp,
                }
                for s in self.chain_of_thought
            ],
        }


@dataclass(frozen=True)
class LoopResult:
    plan: PrioritizedPlan
    result: PrioritizationResult
    metadata: LoopMetadata
    evaluation: Optional[EvaluationResult] = None


@dataclass(frozen=True)
class ProgressUpdate:
    stage: Stage
    iteration: int
    total_iterations: int
    total_tasks: int
    scored_tasks: int
    ordered_count: int
    confidence: float
    progress_pct: float
    plan: Optional[PrioritizedPlan] = field(default=None, compare=False)


ProgressFn = Callable[[ProgressUpdate], None]


async def prioritize(
    tasks: Sequence[TaskSummary],
    outcome: str,
    reflections: Sequence[str],
    previous_plan: Optional[PrioritizedPlan] = None,
    *,
    generator: Agent,
    evaluator: Agent,
    dependency_overrides: Sequence[DependencyEdge] = (),
    config: Optional[LoopConfig] = None,
    on_progress: Optional[ProgressFn] = None,
) -> LoopResult:
    """Generator/evaluator loop producing a ranked plan.

    - One generator pass always runs; a confident draft (>= fast_path_threshold)
      is returned without evaluation.
    - Otherwise evaluate and refine, feeding evaluator feedback into the next
      generator prompt, for at most MAX_ITERATIONS generator passes.
    - An exhausted budget returns the last plan with converged=False.
    - Malformed generator output after all attempts raises GeneratorValidationError.

    Calls are strictly sequential; a caller-level timeout should wrap this
    whole coroutine, not single agent calls.
    """
    if not tasks:
        raise ValueError("prioritize requires at least one task")
    if not outcome or not outcome.strip():
        raise ValueError("prioritize requires a non-empty outcome")

    cfg = config or DEFAULT_CONFIG
    max_iterations = min(MAX_ITERATIONS, max(1, int(cfg.max_iterations)))
    total_tasks = len(tasks)

    ctx = build_generator_context(
        tasks=tasks,
        outcome=outcome,
        reflections=reflections,
        previous_plan=previous_plan,
        dependency_overrides=dependency_overrides,
    )

    started = time.perf_counter()
    chain: list[ChainOfThoughtStep] = []
    progress = _ProgressReporter(on_progress, max_iterations, total_tasks)
    progress.report("started", 0, None)

    iteration = 1
    current = await _run_generator(
        generator,
        render_generator_prompt(ctx, iteration=iteration, max_iterations=max_iterations),
        attempts=cfg.generator_attempts,
        iteration=iteration,
    )
    chain.append(_chain_step(iteration, current))
    progress.report("draft", iteration, current)

    evaluation_triggered = current.confidence < cfg.fast_path_threshold
    converged = not evaluation_triggered
    last_evaluation: Optional[EvaluationResult] = None

    if not evaluation_triggered:
        log.info(
            "fast path | confidence=%.2f | threshold=%.2f", current.confidence, cfg.fast_path_threshold
        )

    while evaluation_triggered:
        evaluation = await _run_evaluator(evaluator, current, ctx)
        if evaluation is None:
            converged = False
            break

        last_evaluation = evaluation
        chain[-1] = replace(chain[-1], evaluator_feedback=_truncate(evaluation.feedback, 1000))
        log.info(
            "evaluation | iteration=%d | status=%s | confidence=%.2f",
            iteration,
            evaluation.status,
            current.confidence,
        )

        if evaluation.passed:
            converged = True
            break

        if iteration >= max_iterations:
            converged = False
            log.warning(
                "loop did not converge | iterations=%d | final_confidence=%.2f",
                iteration,
                current.confidence,
            )
            break

        iteration += 1
        prompt = render_generator_prompt(
            ctx,
            iteration=iteration,
            max_iterations=max_iterations,
            prior_summary=summarize_chain(chain),
            evaluation_feedback=evaluation.feedback,
        )
        current = await _run_generator(
            generator, prompt, attempts=cfg.generator_attempts, iteration=iteration
        )
        chain.append(_chain_step(iteration, current))
        progress.report("refining", iteration, current)

    plan = convert_result_to_plan(current)
    metadata = LoopMetadata(
        iterations=len(chain),
        duration_ms=max(0, round((time.perf_counter() - started) * 1000)),
        evaluation_triggered=evaluation_triggered,
        chain_of_thought=chain,
        converged=converged,
        final_confidence=current.confidence,
    )
    progress.report("completed", iteration, current, plan)

    return LoopResult(plan=plan, result=current, metadata=metadata, evaluation=last_evaluation)


async def _run_generator(
    generator: Agent, prompt: str, *, attempts: int, iteration: int
) -> PrioritizationResult:
    errors: list[str] = []
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        raw = await generator.generate(prompt)
        try:
            return parse_prioritization_result(parse_json_payload(raw))
        except ValueError as e:
            errors.append(f"attempt {attempt}: {e}")
            log.warning(
                "generator output rejected | iteration=%d | attempt=%d/%d | error=%s",
                iteration,
                attempt,
                attempts,
                e,
            )

    raise GeneratorValidationError(
        code="E_GENERATOR_VALIDATION",
        message=f"generator returned invalid output after {attempts} attempts: {errors[-1]}",
        path=f"iteration[{iteration}]",
        details=tuple(errors),
        attempts=attempts,
    )


async def _run_evaluator(
    evaluator: Agent, result: PrioritizationResult, ctx: GeneratorContext
) -> Optional[EvaluationResult]:
    prompt = render_evaluator_prompt(ctx, json.dumps(result_to_dict(result), indent=2, sort_keys=True))
    started = time.perf_counter()
    raw = await evaluator.generate(prompt)
    elapsed_ms = max(0, round((time.perf_counter() - started) * 1000))
    try:
        evaluation = parse_evaluation_result(parse_json_payload(raw))
    except ValueError as e:
        log.warning("evaluator output rejected; keeping best-effort plan | error=%s", e)
        return None
    return replace(evaluation, evaluation_duration_ms=elapsed_ms)


def convert_result_to_plan(result: PrioritizationResult) -> PrioritizedPlan:
    confidence_scores = {tid: s.confidence for tid, s in result.per_task_scores.items()}

    annotations = [
        TaskAnnotation(
            task_id=t.task_id,
            reasoning=t.inclusion_reason,
            confidence=confidence_scores.get(t.task_id),
        )
        for t in result.included_tasks
    ]

    removed = [
        RemovedTask(task_id=t.task_id, removal_reason=t.exclusion_reason)
        for t in result.excluded_tasks
    ]

    dependencies: list[DependencyEdge] = []
    for score in result.per_task_scores.values():
        for dep_id in score.dependencies:
            dependencies.append(
                DependencyEdge(
                    source_task_id=dep_id,
                    target_task_id=score.task_id,
                    relationship_type="prerequisite",
                    confidence=1.0,
                    detection_method="ai_inference",
                )
            )

    return PrioritizedPlan(
        ordered_task_ids=list(result.ordered_task_ids),
        confidence_scores=confidence_scores,
        dependencies=dependencies,
        task_annotations=annotations,
        removed_tasks=removed,
        execution_waves=[ExecutionWave(wave_number=1, task_ids=list(result.ordered_task_ids))],
        synthesis_summary=result.thoughts.prioritization_strategy,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def summarize_chain(steps: Sequence[ChainOfThoughtStep]) -> str:
    lines: list[str] = []
    for step in steps:
        line = (
            f"Iteration {step.iteration}: confidence {step.confidence:.2f}. "
            f"Corrections: {step.corrections or 'N/A'}."
        )
        if step.evaluator_feedback:
            line += f" Evaluator feedback: {step.evaluator_feedback}"
        lines.append(line)
    return "\n".join(lines)


def _chain_step(iteration: int, result: PrioritizationResult) -> ChainOfThoughtStep:
    fallback = (
        "Initial draft - awaiting evaluator feedback."
        if iteration == 1
        else "Refinement iteration completed."
    )
    return ChainOfThoughtStep(
        iteration=iteration,
        confidence=result.confidence,
        corrections=_truncate(result.corrections_made or fallback, 500),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def _truncate(text: str, max_length: int) -> str:
    if not text:
        return ""
    return text if len(text) <= max_length else text[: max_length - 3] + "..."


class _ProgressReporter:
    def __init__(self, handler: Optional[ProgressFn], total_iterations: int, total_tasks: int) -> None:
        self._handler = handler
        self._total_iterations = total_iterations
        self._total_tasks = total_tasks

    def report(
        self,
        stage: Stage,
        iteration: int,
        result: Optional[PrioritizationResult],
        plan: Optional[PrioritizedPlan] = None,
    ) -> None:
        if self._handler is None:
            return

        scored = 0
        ordered = 0
        confidence = 0.0
        if result is not None:
            scored = len(result.included_tasks) + len(result.excluded_tasks)
            ordered = len(result.ordered_task_ids)
            confidence = result.confidence
            if plan is None:
                plan = convert_result_to_plan(result)

        coverage = min(scored / self._total_tasks, 1.0) if self._total_tasks else 0.0
        ratio = min(iteration / self._total_iterations, 1.0) if self._total_iterations else 0.0
        blended = max(0.0, min(0.95, 0.35 * coverage + 0.25 * ratio))
        if stage == "completed":
            pct = 1.0
        else:
            pct = max(0.0 if scored == 0 else 0.05, blended)

        self._handler(
            ProgressUpdate(
                stage=stage,
                iteration=iteration,
                total_iterations=self._total_iterations,
                total_tasks=self._total_tasks,
                scored_tasks=scored,
                ordered_count=ordered,
                confidence=confidence,
                progress_pct=pct,
                plan=plan,
            )
        )

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Sequence

from prioritization_platform.core.model import DependencyEdge, PrioritizedPlan, TaskSummary


GENERATOR_SYSTEM = (
    "You are the GENERATOR agent: a task prioritization expert.\n"
    "Output must be a single JSON object matching the requested PrioritizationResult shape.\n"
    "Never include explanations outside JSON.\n"
)

EVALUATOR_SYSTEM = (
    "You are the EVALUATOR agent: a prioritization quality reviewer.\n"
    "Output must be a single JSON object matching the requested EvaluationResult shape.\n"
    "Never include explanations outside JSON.\n"
)


GENERATOR_TEMPLATE = """Filter and order tasks by how well they advance the user's outcome.

## OUTCOME
{outcome}

## USER REFLECTIONS (recent context)
{reflections}

## TASKS TO EVALUATE ({task_count} total)
{tasks}

## PREVIOUS PLAN (context)
{previous_plan}

## DEPENDENCY CONSTRAINTS (manual overrides)
{dependency_constraints}

## PROCESS
1. Negative constraints first: reflections that say "ignore", "skip", "exclude", "no need",
   "don't need" or "no <topic>" exclude matching tasks. Reflections that say "avoid", "defer",
   "later" or "not now" only rank matching tasks lower. A constraint covers only its own clause:
   in "skip X, focus on Y", Y stays in. Record them in thoughts.negative_constraints_found.
2. Filter: include only tasks that directly advance the outcome.
3. Order included tasks by impact, then effort (prefer high impact, low effort),
   then dependencies (unblocking work first), then reflections.
4. Tasks marked is_manual=true are scored exactly like every other task. Do not boost them.
5. Give every included task a brief_reasoning of at most 20 words that names an outcome,
   dependency or mechanism. Generic phrases ("important", "critical", "high priority") are rejected.
6. Self-check, correct mistakes and describe them in corrections_made.
7. Rate overall confidence between 0 and 1.

## OUTPUT FORMAT
{{
  "thoughts": {{
    "outcome_analysis": "...",
    "negative_constraints_found": ["..."],
    "filtering_rationale": "...",
    "prioritization_strategy": "...",
    "self_check_notes": "..."
  }},
  "included_tasks": [{{"task_id": "...", "inclusion_reason": "...", "alignment_score": 8}}],
  "excluded_tasks": [{{"task_id": "...", "task_text": "...", "exclusion_reason": "...", "alignment_score": 2}}],
  "ordered_task_ids": ["..."],
  "per_task_scores": {{
    "<task_id>": {{
      "task_id": "<task_id>",
      "impact": 8,
      "effort": 12,
      "confidence": 0.85,
      "reasoning": "...",
      "brief_reasoning": "Unblocks checkout launch",
      "dependencies": ["<task_id>"],
      "reflection_influence": "..."
    }}
  }},
  "confidence": 0.85,
  "critical_path_reasoning": "...",
  "corrections_made": "..."
}}
ordered_task_ids must contain exactly the included task ids, each once."""


EVALUATOR_TEMPLATE = """Evaluate whether the prioritization below meets the outcome and reflections.

Score each criterion 0-10: outcome_alignment, strategic_coherence,
reflection_integration, continuity.
PASS when every score is >= 7. NEEDS_IMPROVEMENT when any score is below 7;
then feedback must spell out concrete fixes referencing task ids.
FAIL when outcome_alignment or strategic_coherence is below 5.

## OUTCOME
{outcome}

## REFLECTIONS
{reflections}

## PREVIOUS PLAN
{previous_plan}

## PRIORITIZATION RESULT (JSON)
{result_json}

## OUTPUT FORMAT
{{
  "status": "PASS | NEEDS_IMPROVEMENT | FAIL",
  "feedback": "...",
  "criteria_scores": {{
    "outcome_alignment": {{"score": 0, "notes": "..."}},
    "strategic_coherence": {{"score": 0, "notes": "..."}},
    "reflection_integration": {{"score": 0, "notes": "..."}},
    "continuity": {{"score": 0, "notes": "..."}}
  }},
  "evaluation_duration_ms": 0,
  "evaluator_model": "..."
}}"""


@dataclass(frozen=True)
class GeneratorContext:
    outcome: str
    reflections: str
    task_count: int
    tasks: str
    previous_plan: str
    dependency_constraints: str


def format_reflections(reflections: Sequence[str]) -> str:
    lines = [r.strip() for r in reflections if r and r.strip()]
    if not lines:
        return "No active reflections."
    return "\n".join(f"- {line}" for line in lines)


def format_tasks(tasks: Sequence[TaskSummary]) -> str:
    return "\n".join(
        json.dumps(
            {
                "id": t.task_id,
                "text": t.task_text,
                "source": t.source or "embedding",
                "is_manual": bool(t.manual_override),
            },
            sort_keys=True,
        )
        for t in tasks
    )


def format_previous_plan(plan: Optional[PrioritizedPlan]) -> str:
    if plan is None:
        return "No previous plan available."
    return json.dumps(plan.to_dict(), indent=2, sort_keys=True)


def format_dependency_constraints(edges: Sequence[DependencyEdge]) -> str:
    if not edges:
        return "No manual dependency overrides."
    return "\n".join(
        f"- {e.source_task_id} {e.relationship_type} {e.target_task_id} (Confidence: {e.confidence})"
        for e in edges
    )


def build_generator_context(
    *,
    tasks: Sequence[TaskSummary],
    outcome: str,
    reflections: Sequence[str],
    previous_plan: Optional[PrioritizedPlan],
    dependency_overrides: Sequence[DependencyEdge],
) -> GeneratorContext:
    return GeneratorContext(
        outcome=outcome.strip(),
        reflections=format_reflections(reflections),
        task_count=len(tasks),
        tasks=format_tasks(tasks),
        previous_plan=format_previous_plan(previous_plan),
        dependency_constraints=format_dependency_constraints(dependency_overrides),
    )


def render_generator_prompt(
    ctx: GeneratorContext,
    *,
    iteration: int,
    max_iterations: int,
    prior_summary: Optional[str] = None,
    evaluation_feedback: Optional[str] = None,
) -> str:
    prompt = GENERATOR_TEMPLATE.format(
        outcome=ctx.outcome,
        reflections=ctx.reflections,
        task_count=ctx.task_count,
        tasks=ctx.tasks,
        previous_plan=ctx.previous_plan,
        dependency_constraints=ctx.dependency_constraints,
    )
    prompt += f"\n\n## ITERATION CONTEXT\nYou are running iteration {iteration} of {max_iterations}."
    if prior_summary:
        prompt += f"\n\n## PRIOR ITERATION SUMMARY\n{prior_summary}"
    if evaluation_feedback:
        prompt += f"\n\n## EVALUATION FEEDBACK TO ADDRESS\n{evaluation_feedback}"
    return prompt


def render_evaluator_prompt(ctx: GeneratorContext, result_json: str) -> str:
    return EVALUATOR_TEMPLATE.format(
        outcome=ctx.outcome,
        reflections=ctx.reflections,
        previous_plan=ctx.previous_plan,
        result_json=result_json,
    )

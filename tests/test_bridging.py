import asyncio

import pytest

from prioritization_platform.core.errors import (
    CycleDetectedError,
    DuplicateTaskError,
    TaskInsertionError,
)
from prioritization_platform.core.graph.bridging import ExistingTask, plan_bridging_insertion
from prioritization_platform.core.model import BridgingTask


EXISTING = [
    ExistingTask(task_id="design", task_text="Design pricing page", embedding=[1.0, 0.0, 0.0]),
    ExistingTask(task_id="launch", task_text="Launch pricing page", embedding=[0.0, 1.0, 0.0]),
]
EDGES = [("design", "launch")]


def _task(**overrides):
    fields = dict(
        id="copy",
        task_text="Write pricing page copy for three tiers",
        estimated_hours=16,
        predecessor_id="design",
        successor_id="launch",
    )
    fields.update(overrides)
    return BridgingTask(**fields)


class FakeEmbedder:
    def __init__(self, vector):
        self.vector = vector

    async def embed(self, text):
        return self.vector

    async def embed_batch(self, texts):
        return [self.vector for _ in texts]


def _plan(tasks, edges=EDGES, embedder=None):
    return asyncio.run(plan_bridging_insertion(tasks, edges, EXISTING, embedder, duplicate_threshold=0.9))


def test_plan_builds_two_edges_per_task():
    plan = _plan([_task(task_text="  Write pricing page copy for three tiers  ")])

    assert [t.id for t in plan.tasks] == ["copy"]
    assert plan.tasks[0].task_text == "Write pricing page copy for three tiers"
    assert [(e.source_task_id, e.target_task_id) for e in plan.edges] == [
        ("design", "copy"),
        ("copy", "launch"),
    ]


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"task_text": "too short"}, "description length"),
        ({"task_text": "x" * 501}, "description length"),
        ({"estimated_hours": 4}, "estimated hours"),
        ({"estimated_hours": 161}, "estimated hours"),
        ({"estimated_hours": 12.5}, "estimated hours"),
        ({"predecessor_id": " "}, "predecessor and successor"),
        ({"id": "design"}, "already exists"),
    ],
)
def test_invalid_tasks_are_rejected(overrides, fragment):
    with pytest.raises(TaskInsertionError) as exc:
        _plan([_task(**overrides)])
    assert exc.value.code == "E_VALIDATION"
    assert fragment in exc.value.message


def test_unknown_neighbours_are_reported():
    with pytest.raises(TaskInsertionError) as exc:
        _plan([_task(successor_id="ghost")])
    assert exc.value.code == "E_TASK_NOT_FOUND"
    assert "ghost" in exc.value.message


def test_empty_batch_is_rejected():
    with pytest.raises(TaskInsertionError):
        _plan([])


def test_duplicate_of_existing_task_is_rejected():
    with pytest.raises(DuplicateTaskError) as exc:
        _plan([_task()], embedder=FakeEmbedder([0.99, 0.1, 0.0]))

    err = exc.value
    assert err.code == "E_DUPLICATE_TASK"
    assert err.existing_task_id == "design"
    assert err.similarity >= 0.9
    assert "Design pricing page" in err.details[0]


def test_distinct_task_passes_duplicate_check():
    plan = _plan([_task()], embedder=FakeEmbedder([0.0, 0.0, 1.0]))
    assert plan.embeddings == {"copy": [0.0, 0.0, 1.0]}


def test_insertion_closing_a_loop_is_rejected():
    # launch already leads back to design, so design -> copy -> launch closes a loop.
    edges = [("design", "launch"), ("launch", "design")]
    with pytest.raises(CycleDetectedError) as exc:
        _plan([_task()], edges=edges)
    assert exc.value.cycle_path[0] == exc.value.cycle_path[-1]

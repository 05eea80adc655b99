import json
from datetime import datetime, timezone

import pytest

from prioritization_platform.core.errors import InputLoadError
from prioritization_platform.core.io.load_inputs import (
    load_document,
    parse_drafts,
    parse_edges,
    parse_plan,
    parse_reflection_texts,
    parse_reflections,
    parse_tasks,
    parse_timestamp,
)


def _write(tmp_path, name, text):
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return str(p)


@pytest.mark.parametrize(
    "name, text, code",
    [
        ("in.yaml", "a: [\n", "E_YAML_PARSE"),
        ("in.json", "{nope", "E_JSON_PARSE"),
        ("in.txt", "a: 1", "E_UNSUPPORTED_FORMAT"),
        ("in.yaml", "- 1\n- 2\n", "E_INVALID_TOP_LEVEL"),
    ],
)
def test_load_document_errors(tmp_path, name, text, code):
    with pytest.raises(InputLoadError) as exc:
        load_document(_write(tmp_path, name, text))
    assert exc.value.code == code
    assert exc.value.file.endswith(name)


def test_load_document_missing_file(tmp_path):
    with pytest.raises(InputLoadError) as exc:
        load_document(str(tmp_path / "absent.yaml"))
    assert exc.value.code == "E_FILE_NOT_FOUND"


def test_parse_tasks_accepts_short_keys(tmp_path):
    doc = load_document(
        _write(
            tmp_path,
            "in.json",
            json.dumps({"tasks": [{"id": "t1", "text": "Ship pricing"}, {"task_id": "t2", "task_text": "Email", "manual_override": True}]}),
        )
    )
    tasks = parse_tasks(doc)
    assert [(t.task_id, t.task_text, t.manual_override) for t in tasks] == [
        ("t1", "Ship pricing", False),
        ("t2", "Email", True),
    ]


def test_parse_tasks_rejects_duplicates_with_path():
    doc = {"tasks": [{"id": "t1", "text": "a"}, {"id": "t1", "text": "b"}], "__file__": "in.yaml"}
    with pytest.raises(InputLoadError) as exc:
        parse_tasks(doc)
    assert exc.value.code == "E_INVALID_FIELD"
    assert exc.value.path == "tasks[1].task_id"
    assert str(exc.value).startswith("in.yaml:tasks[1].task_id: E_INVALID_FIELD")


def test_parse_tasks_requires_list():
    with pytest.raises(InputLoadError):
        parse_tasks({"tasks": "t1"})


def test_parse_timestamp():
    assert parse_timestamp("2026-10-01T12:00:00Z") == datetime(2026, 10, 1, 12, tzinfo=timezone.utc)
    assert parse_timestamp("2026-10-01").tzinfo is not None
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_parse_reflections():
    doc = {
        "reflections": [
            {"id": "r1", "text": "Focus on payments", "created_at": "2026-10-01T00:00:00Z", "user_id": "u1"},
            {"id": "r2", "text": "Skip docs", "created_at": "2026-10-02T00:00:00Z", "is_active": False},
        ]
    }
    refs = parse_reflections(doc)
    assert [r.id for r in refs] == ["r1", "r2"]
    assert refs[0].user_id == "u1"
    assert refs[1].is_active is False

    doc["reflections"][0]["created_at"] = "soon"
    with pytest.raises(InputLoadError) as exc:
        parse_reflections(doc)
    assert exc.value.path == "reflections[0].created_at"


def test_parse_reflection_texts_mixes_strings_and_mappings():
    doc = {"reflections": ["  Focus on payments ", {"text": "Skip docs", "is_active": False}, {"text": "Ship fast"}]}
    assert parse_reflection_texts(doc) == ["Focus on payments", "Ship fast"]
    assert parse_reflection_texts({}) == []


def test_parse_edges_pairs_and_mappings():
    doc = {"edges": [["a", "b"], {"source": "b", "target": "c", "detection_method": "stored_relationship"}]}
    edges = parse_edges(doc)
    assert [e.as_pair() for e in edges] == [("a", "b"), ("b", "c")]
    assert edges[1].detection_method == "stored_relationship"

    with pytest.raises(InputLoadError):
        parse_edges({"edges": [["a"]]})


def test_parse_plan():
    doc = {"plan": {"ordered_task_ids": ["a", "b"], "confidence_scores": {"a": 0.9, "b": 1}}}
    plan = parse_plan(doc)
    assert plan.ordered_task_ids == ["a", "b"]
    assert plan.confidence_scores == {"a": 0.9, "b": 1.0}

    with pytest.raises(InputLoadError) as exc:
        parse_plan({"plan": {"ordered_task_ids": "a"}})
    assert exc.value.path == "plan.ordered_task_ids"


def test_parse_drafts_fills_hash_and_source():
    doc = {"drafts": [{"id": "d1", "task_text": "Write copy", "embedding": [1, 0]}]}
    drafts = parse_drafts(doc, "drafts", "phase10_semantic")
    assert drafts[0].source == "phase10_semantic"
    assert drafts[0].embedding == [1.0, 0.0]
    assert len(drafts[0].deduplication_hash) == 64

    with pytest.raises(InputLoadError):
        parse_drafts({"drafts": [{"id": "d1", "task_text": "x", "embedding": ["a"]}]}, "drafts", "phase10_semantic")

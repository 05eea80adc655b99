import json

from typer.testing import CliRunner

from prioritization_platform.cli import app


runner = CliRunner()


def _input(tmp_path, plan=None):
    doc = {
        "plan": plan
        or {
            "ordered_task_ids": ["t1", "t2", "t3"],
            "confidence_scores": {"t1": 0.8, "t2": 0.7, "t3": 0.6},
        },
        "tasks": [
            {"id": "t1", "text": "Refactor billing service"},
            {"id": "t2", "text": "Write marketing blog post"},
            {"id": "t3", "text": "Fix mobile login crash"},
        ],
        "reflections": [
            {"id": "r1", "text": "mobile login crash", "created_at": "2025-03-19T12:00:00Z", "user_id": "u1"},
            {"id": "r2", "text": "ignore marketing", "created_at": "2025-03-19T12:00:00Z", "user_id": "u1"},
        ],
    }
    p = tmp_path / "adjust.json"
    p.write_text(json.dumps(doc), encoding="utf-8")
    return str(p)


ARGS = ["--user-id", "u1", "--reflection", "r1", "--reflection", "r2", "--now", "2025-03-20T12:00:00Z"]


def test_adjust_json(tmp_path):
    r = runner.invoke(app, ["adjust", _input(tmp_path), *ARGS, "--format", "json"])

    assert r.exit_code == 0, r.stdout + r.stderr
    result = json.loads(r.stdout)["result"]
    assert result["ordered_task_ids"] == ["t3", "t1"]
    assert result["diff"]["filtered"][0]["task_id"] == "t2"
    assert result["adjustment_metadata"]["tasks_filtered"] == 1


def test_adjust_text(tmp_path):
    r = runner.invoke(app, ["adjust", _input(tmp_path), *ARGS])

    assert r.exit_code == 0
    assert "OK: moved=" in r.stdout
    assert "filtered=1" in r.stdout


def test_adjust_empty_baseline(tmp_path):
    path = _input(tmp_path, plan={"ordered_task_ids": [], "confidence_scores": {}})
    r = runner.invoke(app, ["adjust", path, *ARGS])

    assert r.exit_code == 2
    assert "E_BASELINE_EMPTY" in (r.stdout + r.stderr)


def test_adjust_bad_now(tmp_path):
    r = runner.invoke(app, ["adjust", _input(tmp_path), "--user-id", "u1", "--now", "later"])
    assert r.exit_code == 2
    assert "E_INVALID_TIMESTAMP" in (r.stdout + r.stderr)


def test_adjust_missing_file(tmp_path):
    r = runner.invoke(app, ["adjust", str(tmp_path / "nope.yaml"), "--user-id", "u1"])
    assert r.exit_code == 1
    assert "E_FILE_NOT_FOUND" in (r.stdout + r.stderr)

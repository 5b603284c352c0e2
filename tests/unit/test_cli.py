import json

import pytest
from typer.testing import CliRunner

from waypoint.cli import app

runner = CliRunner()

WORKFLOW = {
    "id": "welcome",
    "name": "Welcome mail",
    "steps": {
        "nodes": [
            {"id": "prepare", "kind": "update", "config": {"set": {"greeting": "Hi {{name}}"}}},
            {"id": "send", "kind": "notify", "config": {"message": "{{greeting}}"}},
        ],
        "edges": [{"from": "prepare", "to": "send"}],
    },
}


@pytest.fixture(autouse=True)
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("WAYPOINT_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("WAYPOINT_DATABASE_URL", f"sqlite://{tmp_path / 'wf.db'}")
    monkeypatch.delenv("WAYPOINT_TRANSPORT", raising=False)


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "welcome.json"
    path.write_text(json.dumps(WORKFLOW))
    return path


def test_validate(workflow_file, tmp_path):
    result = runner.invoke(app, ["workflow", "validate", str(workflow_file)])
    assert result.exit_code == 0
    assert "welcome is valid (2 steps, 1 edges)" in result.output

    broken = tmp_path / "broken.yaml"
    broken.write_text("id: broken\nsteps:\n  nodes: []\n")
    result = runner.invoke(app, ["workflow", "validate", str(broken)])
    assert result.exit_code == 1
    assert "Invalid:" in result.output


def test_publish_list_and_run(workflow_file):
    result = runner.invoke(app, ["workflow", "publish", str(workflow_file)])
    assert result.exit_code == 0
    assert "Published welcome version 1" in result.output

    result = runner.invoke(app, ["workflow", "list"])
    assert "welcome\tv1\tWelcome mail" in result.output

    result = runner.invoke(
        app, ["workflow", "run", "welcome", "--context", json.dumps({"name": "Ada"})]
    )
    assert result.exit_code == 0, result.output
    assert "COMPLETED" in result.output
    execution_id = result.output.split()[1].rstrip(":")

    result = runner.invoke(app, ["execution", "list"])
    assert execution_id in result.output

    result = runner.invoke(app, ["execution", "show", execution_id])
    assert result.exit_code == 0
    assert f"Execution {execution_id}: COMPLETED (welcome v1)" in result.output
    assert '"greeting": "Hi Ada"' in result.output
    assert "- prepare [1.1]: completed" in result.output
    assert "- send [1.1]: completed" in result.output


def test_run_rejects_bad_context(workflow_file):
    runner.invoke(app, ["workflow", "publish", str(workflow_file)])
    result = runner.invoke(app, ["workflow", "run", "welcome", "--context", "[1]"])
    assert result.exit_code == 1
    assert "JSON object" in result.output


def test_run_unknown_workflow():
    result = runner.invoke(app, ["workflow", "run", "ghost"])
    assert result.exit_code == 1


def test_execution_show_unknown():
    result = runner.invoke(app, ["execution", "show", "nope"])
    assert result.exit_code == 1
    assert "Execution not found" in result.output


def test_trigger_register_and_list(workflow_file, tmp_path):
    runner.invoke(app, ["workflow", "publish", str(workflow_file)])
    triggers = tmp_path / "triggers.yaml"
    triggers.write_text(
        """
triggers:
  - workflowId: welcome
    name: signup hook
    kind: webhook
    config:
      authentication: {type: bearer, secret: abc}
  - workflowId: welcome
    kind: manual
"""
    )

    result = runner.invoke(app, ["trigger", "register", str(triggers)])
    assert result.exit_code == 0, result.output
    assert "(webhook, inactive)" in result.output
    assert "(manual, inactive)" in result.output

    result = runner.invoke(app, ["trigger", "list"])
    lines = [line for line in result.output.splitlines() if "\twelcome\t" in line]
    assert len(lines) == 2
    assert all("inactive\tfired=0\terrors=0" in line for line in lines)


def test_trigger_register_for_unpublished_workflow(tmp_path):
    triggers = tmp_path / "orphan.yaml"
    triggers.write_text("workflowId: missing\nkind: manual\n")
    result = runner.invoke(app, ["trigger", "register", str(triggers)])
    assert result.exit_code == 1
    assert "unpublished" in result.output

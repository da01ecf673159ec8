from __future__ import annotations

import json
import textwrap

import pytest
from click.testing import CliRunner

from analysis_engine.cli import cli
from analysis_engine.utils.logging import configure_logging
from analysis_engine.utils.result import ExitCode

ANALYZERS = textwrap.dedent("""
    from analysis_engine.engine import AnalysisOutcome, Suggestion


    class CatalogAnalyzer:
        def __init__(self, ids):
            self.ids = ids

        async def get_entities(self, limit):
            return self.ids[:limit]

        async def analyze_entity(self, entity_id):
            return AnalysisOutcome(
                success=True,
                suggestions=[Suggestion(type="create_discount", priority=80)],
            )


    def products():
        return CatalogAnalyzer([1, 2, 3])


    def customers():
        return CatalogAnalyzer([10, 11])
""")

DEFAULTS = textwrap.dedent("""
    batch:
      follow_up_delay_seconds: 0
    analyzers:
      products: cli_shop_analyzers:products
      customers: cli_shop_analyzers:customers
""")


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    configure_logging()


@pytest.fixture()
def workspace(tmp_path, monkeypatch):
    (tmp_path / "cli_shop_analyzers.py").write_text(ANALYZERS)
    monkeypatch.syspath_prepend(str(tmp_path))
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "defaults.yaml").write_text(DEFAULTS)
    return tmp_path


@pytest.fixture()
def invoke(workspace):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, [
            "--config", str(workspace / "config"),
            "--state-dir", str(workspace / "state"),
            "--log-level", "error",
            *args,
        ])

    return _invoke


def _json(result) -> dict:
    return json.loads(result.stdout)


def test_status_when_idle(invoke):
    result = invoke("status")

    assert result.exit_code == 0
    assert _json(result)["status"] == "idle"


def test_start_and_wait_completes_job(invoke):
    result = invoke("start", "--wait")

    assert result.exit_code == 0, result.output
    data = _json(result)
    assert data["status"] == "completed"
    assert data["progress"]["processed"] == 5
    assert data["progress"]["actions_created"] == 5

    history = _json(invoke("status", "--history"))["history"]
    assert len(history) == 1
    assert history[0]["success"] is True


def test_start_then_run(invoke):
    started = invoke("start", "--kind", "products", "--limit", "2")

    assert started.exit_code == 0, started.output
    assert _json(started)["status"] == "started"
    status = _json(invoke("status"))
    assert status["status"] == "running"
    assert status["total"] == 2

    result = invoke("run")

    assert result.exit_code == 0, result.output
    assert _json(result)["progress"]["counters"]["products"]["succeeded"] == 2


def test_second_start_is_rejected_while_running(invoke):
    invoke("start")

    result = invoke("start")

    assert result.exit_code == ExitCode.JOB_REJECTED
    assert _json(result)["error"]["code"] == "JOB_ALREADY_RUNNING"


def test_entity_limit_option(invoke):
    result = invoke("start", "--entity-limit", "customers=1")

    assert result.exit_code == 0, result.output
    counters = _json(invoke("status"))["counters"]
    assert counters["products"]["total"] == 3
    assert counters["customers"]["total"] == 1


def test_malformed_entity_limit(invoke):
    result = invoke("start", "--entity-limit", "customers")

    assert result.exit_code == 2


def test_unknown_kind_is_rejected(invoke):
    result = invoke("start", "--kind", "orders")

    assert result.exit_code == ExitCode.JOB_REJECTED
    assert _json(result)["error"]["code"] == "INVALID_KIND"


def test_cancel_running_job(invoke):
    invoke("start")

    result = invoke("cancel")

    assert result.exit_code == 0
    assert _json(result)["status"] == "cancelled"
    assert _json(invoke("acknowledge"))["acknowledged"] is True
    assert _json(invoke("status"))["status"] == "idle"


def test_cancel_without_job_fails(invoke):
    result = invoke("cancel")

    assert result.exit_code == ExitCode.GENERAL_ERROR
    assert _json(result)["error"]["code"] == "NO_JOB_RUNNING"


def test_reset(invoke):
    invoke("start")

    assert _json(invoke("reset"))["reset"] is True
    assert _json(invoke("status"))["status"] == "idle"


def test_limits_report(invoke):
    invoke("start", "--wait")

    data = _json(invoke("limits"))

    assert data["hourly"]["used"] == 5
    assert data["daily"]["limit"] == 1000
    assert data["analyses_today"]["used"] == 1

    cleared = _json(invoke("limits", "--clear", "hour"))
    assert cleared["hourly"]["used"] == 0
    assert cleared["daily"]["used"] == 5


def test_circuits_and_reset_circuit(invoke):
    invoke("start", "--wait")

    circuits = _json(invoke("circuits"))["circuits"]
    assert circuits["analyze.products"]["state"] == "closed"

    result = _json(invoke("reset-circuit", "analyze.products"))
    assert result == {"operation": "analyze.products", "reset": True}
    assert "analyze.products" not in _json(invoke("circuits"))["circuits"]


def test_invalid_config_exits_with_config_code(invoke, workspace):
    (workspace / "config" / "local.yaml").write_text("batch:\n  max_items: 0\n")

    result = invoke("status")

    assert result.exit_code == ExitCode.CONFIG_INVALID
    assert "batch.max_items" in _json(result)["message"]


def test_unimportable_analyzer(invoke, workspace):
    (workspace / "config" / "local.yaml").write_text(
        "analyzers:\n  products: not_a_module_anywhere:factory\n"
    )

    result = invoke("start")

    assert result.exit_code == ExitCode.ANALYZER_IMPORT
    assert "not_a_module_anywhere" in result.output

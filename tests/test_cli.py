"""
Tests for the command line entrypoint.
"""

import pytest
from click.testing import CliRunner

from upload_optimizer import cli


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("IUO_UPSTREAM", "IUO_TASKS_FILE", "IUO_WATCH_DIR", "IUO_PORT", "IUO_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestCli:
    """Tests for option handling and startup."""

    def test_builds_app_and_runs_server(self, clean_env, config_dir, monkeypatch):
        tasks_file = config_dir / "tasks.yaml"
        tasks_file.write_text("tasks:\n  - name: keep\n    extensions: [jpg]\n")
        served = {}

        def fake_run(app, host, port, log_level):
            served.update(app=app, host=host, port=port, log_level=log_level)

        monkeypatch.setattr(cli.uvicorn, "run", fake_run)

        result = CliRunner().invoke(
            cli.main,
            ["--upstream", "http://immich:2283", "--tasks-file", str(tasks_file), "--port", "8080"],
        )

        assert result.exit_code == 0, result.output
        assert served["port"] == 8080
        assert served["host"] == "0.0.0.0"
        assert served["log_level"] == "info"
        assert served["app"].state.settings.upstream == "http://immich:2283"

    def test_upstream_from_environment(self, clean_env, config_dir, monkeypatch):
        tasks_file = config_dir / "tasks.yaml"
        tasks_file.write_text("tasks:\n  - name: keep\n    extensions: [jpg]\n")
        monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: None)

        result = CliRunner().invoke(
            cli.main,
            ["--tasks-file", str(tasks_file)],
            env={"IUO_UPSTREAM": "https://photos.example.com"},
        )

        assert result.exit_code == 0, result.output

    def test_invalid_task_file_is_fatal(self, clean_env, config_dir, monkeypatch):
        tasks_file = config_dir / "tasks.yaml"
        tasks_file.write_text("tasks:\n  - name: bad\n    command: cp {nope} x\n    extensions: [jpg]\n")
        monkeypatch.setattr(cli.uvicorn, "run", lambda app, **kwargs: pytest.fail("server must not start"))

        result = CliRunner().invoke(cli.main, ["--upstream", "http://immich:2283", "--tasks-file", str(tasks_file)])

        assert result.exit_code == 1
        assert "unknown placeholder" in result.output

    def test_missing_upstream_is_fatal(self, clean_env):
        result = CliRunner().invoke(cli.main, [])

        assert result.exit_code == 1
        assert "upstream" in result.output

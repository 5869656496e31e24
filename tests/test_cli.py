"""Tests for controlplane.cli: exit codes, settings wiring, and the check command."""

from __future__ import annotations

import threading

import httpx
import pytest
from fastapi import FastAPI
from typer.testing import CliRunner

from controlplane import cli
from controlplane.cli import EXIT_FAILURE, EXIT_FORCED, EXIT_OK, app, run
from controlplane.config import Settings
from controlplane.lifecycle import LifecycleManager, ServerState

from .conftest import free_port, url_for, wait_until

runner = CliRunner()


@pytest.fixture(autouse=True)
def _keep_test_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Leave pytest's log capture in place instead of installing the rich handler."""
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)


class TestRun:
    def test_clean_exit(self, settings: Settings) -> None:
        lifecycle = LifecycleManager(settings)
        lifecycle.token.cancel("test")

        assert run(lifecycle) == EXIT_OK
        assert lifecycle.state is ServerState.STOPPED

    def test_bind_failure(self, occupied_port: int) -> None:
        lifecycle = LifecycleManager(
            Settings(host="127.0.0.1", port=occupied_port, log_level="DEBUG")
        )
        assert run(lifecycle) == EXIT_FAILURE
        assert lifecycle.state is ServerState.STOPPED

    def test_forced_shutdown(self, slow_app: FastAPI) -> None:
        lifecycle = LifecycleManager(
            Settings(host="127.0.0.1", port=0, drain_deadline=0.3), app=slow_app
        )
        outcome: list[object] = []

        def slow_client() -> None:
            wait_until(lambda: lifecycle.state is ServerState.SERVING)
            try:
                outcome.append(httpx.get(url_for(lifecycle, "/slow?seconds=30"), timeout=10.0))
            except httpx.HTTPError as exc:
                outcome.append(exc)

        def interrupt() -> None:
            wait_until(lambda: lifecycle.tracker.active == 1)
            lifecycle.token.cancel("SIGTERM")

        client = threading.Thread(target=slow_client)
        trigger = threading.Thread(target=interrupt)
        client.start()
        trigger.start()

        assert run(lifecycle) == EXIT_FORCED
        trigger.join()
        client.join()
        assert lifecycle.tracker.cancelled == 1

    def test_serve_exit_without_request(self, settings: Settings) -> None:
        lifecycle = LifecycleManager(settings)

        def stop_uvicorn() -> None:
            wait_until(lambda: lifecycle.state is ServerState.SERVING)
            lifecycle._server.should_exit = True  # type: ignore[union-attr]

        threading.Thread(target=stop_uvicorn).start()
        assert run(lifecycle) == EXIT_FAILURE


class TestServeCommand:
    def test_port_in_use_exits_non_zero(self, occupied_port: int) -> None:
        result = runner.invoke(app, ["serve", "--host", "127.0.0.1", "--port", str(occupied_port)])
        assert result.exit_code == EXIT_FAILURE

    def test_bad_environment_exits_non_zero(self) -> None:
        result = runner.invoke(app, ["serve"], env={"CONTROLPLANE_PORT": "eighty"})
        assert result.exit_code == EXIT_FAILURE
        assert "configuration error" in result.output

    @pytest.mark.parametrize("deadline", ["inf", "nan"])
    def test_non_finite_deadline_exits_non_zero(self, deadline: str) -> None:
        result = runner.invoke(app, ["serve", "--port", "0", "--deadline", deadline])
        assert result.exit_code == EXIT_FAILURE
        assert "drain deadline" in result.output

    def test_options_override_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        captured: list[Settings] = []

        def fake_run(manager: LifecycleManager) -> int:
            captured.append(manager.settings)
            return EXIT_OK

        monkeypatch.setattr(cli, "run", fake_run)
        result = runner.invoke(
            app,
            [
                "serve",
                "--port", "9000",
                "--deadline", "3",
                "--health-path", "/live",
                "--health-path", "/ready",
                "--log-level", "debug",
            ],
            env={"CONTROLPLANE_HOST": "127.0.0.1", "CONTROLPLANE_PORT": "8000"},
        )

        assert result.exit_code == EXIT_OK
        (settings,) = captured
        assert settings.host == "127.0.0.1"
        assert settings.port == 9000
        assert settings.drain_deadline == 3.0
        assert settings.health_paths == ("/live", "/ready")
        assert settings.log_level == "DEBUG"


class TestCheckCommand:
    def test_healthy(self, manager: LifecycleManager) -> None:
        result = runner.invoke(app, ["check", "--url", url_for(manager)])
        assert result.exit_code == EXIT_OK
        assert "ok" in result.output

    def test_unreachable(self) -> None:
        url = f"http://127.0.0.1:{free_port()}/health"
        result = runner.invoke(app, ["check", "--url", url, "--retries", "2", "--interval", "0"])
        assert result.exit_code == EXIT_FAILURE
        assert "unreachable" in result.output

    def test_non_health_payload(self, manager: LifecycleManager) -> None:
        result = runner.invoke(
            app, ["check", "--url", url_for(manager, "/"), "--retries", "1"]
        )
        assert result.exit_code == EXIT_FAILURE

    def test_not_found(self, manager: LifecycleManager) -> None:
        result = runner.invoke(
            app, ["check", "--url", url_for(manager, "/missing"), "--retries", "1"]
        )
        assert result.exit_code == EXIT_FAILURE
        assert "404" in result.output

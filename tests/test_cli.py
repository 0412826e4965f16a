"""
Command line tests against the local file backend.
"""

import asyncio
import json
import os
from datetime import timedelta

import pytest

from leasegate.config import Settings
from leasegate.main import main
from leasegate.store import FileLeaseStore, format_timestamp, lease_key
from leasegate.utils.time import utc_now


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


def run(state_dir, *args) -> int:
    return main(["--backend", "file", "--state-dir", str(state_dir), *args])


@pytest.fixture
def seeded(state_dir):
    """An hour-old claim that is still being renewed."""
    settings = Settings(_env_file=None, state_dir=state_dir)
    store = FileLeaseStore(state_dir, settings)
    now = utc_now()
    created = asyncio.run(
        store.create_if_absent(
            lease_key("task-A"),
            {
                "owner_id": "agent-1",
                "claimed_at": format_timestamp(now - timedelta(hours=1)),
                "renewed_at": format_timestamp(now),
            },
            300,
        )
    )
    assert created
    return store


def test_recover_prints_cycle_summary(seeded, state_dir, capsys):
    assert run(state_dir, "recover") == 0

    summary = json.loads(capsys.readouterr().out)
    assert summary["orphaned"] == ["task-A"]
    assert summary["corrupt"] == 0


def test_report_written_to_file(seeded, state_dir, tmp_path, capsys):
    output = tmp_path / "reports" / "recovery.json"

    assert run(state_dir, "report", "--output", str(output)) == 0

    report = json.loads(output.read_text())
    assert set(report) == {"report_time", "system_status", "work_statistics", "thresholds"}
    assert report["system_status"]["backend"] == "file"
    assert report["work_statistics"]["active_claims"] == 1
    assert report["work_statistics"]["orphaned_claims"] == 1
    assert report["thresholds"]["orphan_threshold_seconds"] == 1800


def test_health_without_coordinator(state_dir, capsys):
    assert run(state_dir, "health") == 1
    assert "not running" in capsys.readouterr().out


def test_status_without_coordinator(state_dir, capsys):
    assert run(state_dir, "status") == 1
    out = capsys.readouterr().out
    assert "Coordinator: stopped" in out
    assert "Backend: file" in out


def test_stop_without_coordinator(state_dir, capsys):
    assert run(state_dir, "stop") == 0
    assert "not running" in capsys.readouterr().out


def test_invalid_configuration(state_dir, capsys):
    assert main(["--redis-url", "http://nowhere", "--state-dir", str(state_dir), "health"]) == 1
    assert "Invalid configuration" in capsys.readouterr().err


def test_unknown_command_is_rejected():
    with pytest.raises(SystemExit):
        main(["launch"])


def test_recover_only_selected_step(seeded, state_dir, capsys):
    assert run(state_dir, "recover", "--only", "stale", "--only", "early-failure") == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["orphaned"] == []
    assert asyncio.run(seeded.get(lease_key("task-A"))) is not None

    assert run(state_dir, "recover", "--only", "orphans") == 0
    assert json.loads(capsys.readouterr().out)["orphaned"] == ["task-A"]


def test_recover_rejects_unknown_step(state_dir):
    with pytest.raises(SystemExit):
        run(state_dir, "recover", "--only", "everything")


@pytest.mark.parametrize(
    "command,fallback",
    [("restart", False), ("restart-with-fallback", True)],
)
def test_restart_without_coordinator_starts_one(
    state_dir, monkeypatch, capsys, command, fallback
):
    started = []

    def fake_start(settings, allow_fallback):
        started.append((settings.state_dir, allow_fallback))
        return 0

    monkeypatch.setattr("leasegate.main.cmd_start", fake_start)

    assert run(state_dir, command) == 0
    assert started == [(state_dir, fallback)]
    assert "not running" in capsys.readouterr().out


@pytest.fixture
def fake_docker(tmp_path, monkeypatch):
    """A ``docker`` on PATH that records its arguments."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    calls = tmp_path / "docker-calls.txt"
    script = bin_dir / "docker"
    script.write_text(f'#!/bin/sh\necho "$@" >> "{calls}"\n')
    script.chmod(0o755)
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    compose_file = tmp_path / "docker-compose.coordination.yml"
    compose_file.write_text("services: {}\n")
    monkeypatch.setenv("LEASEGATE_COMPOSE_FILE", str(compose_file))
    return calls, compose_file


def test_start_and_stop_services(fake_docker, state_dir, capsys):
    calls, compose_file = fake_docker

    assert run(state_dir, "start-services") == 0
    assert run(state_dir, "stop-services") == 0

    assert calls.read_text().splitlines() == [
        f"compose -f {compose_file} up -d",
        f"compose -f {compose_file} down",
    ]
    out = capsys.readouterr().out
    assert "Services started" in out
    assert "Services stopped" in out


def test_services_without_compose_file(state_dir, tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("LEASEGATE_COMPOSE_FILE", str(tmp_path / "missing.yml"))

    assert run(state_dir, "start-services") == 1
    assert "Could not start services" in capsys.readouterr().out

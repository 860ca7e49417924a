"""Tests for the command line in buildkeeper.main."""

from __future__ import annotations

import json
import subprocess
import sys

import pytest

from buildkeeper import main
from buildkeeper.supervisor import Supervisor
from buildkeeper.supervisor.config_utils import check_configuration
from buildkeeper.supervisor.persistence import HandleFile


@pytest.fixture
def supervisor(config, platform, runner):
    return Supervisor(config, platform, runner)


def _use_python_for_all_commands(config):
    config.INSTALL_COMMAND = [sys.executable, "-c", "pass"]
    config.BUILD_COMMAND = [sys.executable, "-c", "pass"]
    config.START_COMMAND = [sys.executable, "-c", "pass"]


class TestExecuteCommand:
    def test_unknown_command(self, supervisor):
        assert main.execute_command("deploy", [], supervisor) == 2

    def test_help(self, supervisor, capsys):
        assert main.execute_command("help", [], supervisor) == 0
        assert "Usage: buildkeeper" in capsys.readouterr().out

    def test_status_without_service(self, supervisor, capsys):
        assert main.execute_command("status", [], supervisor) == 3
        status = json.loads(capsys.readouterr().out)
        assert status["alive"] is False
        assert status["handle"] is None

    def test_status_with_running_service(self, supervisor, platform, capsys):
        supervisor.initial_cycle()
        capsys.readouterr()
        assert main.execute_command("status", [], supervisor) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["alive"] is True
        assert status["handle"]["pgid"] == platform.spawned[0].pgid
        assert status["build_output_exists"] is True

    def test_stop_without_supervisor_stops_recorded_group(self, supervisor, platform, config):
        supervisor.initial_cycle()
        handle = platform.spawned[0]

        assert main.execute_command("stop", [], supervisor) == 0
        assert platform.groups[handle.pgid] == set()
        assert HandleFile(config).read() is None

    def test_check_config_missing_executable(self, supervisor, config):
        _use_python_for_all_commands(config)
        config.BUILD_COMMAND = ["definitely-not-a-build-tool", "build"]
        assert main.execute_command("check-config", [], supervisor) == 1

    def test_check_config_ok(self, supervisor, config):
        _use_python_for_all_commands(config)
        assert main.execute_command("check-config", [], supervisor) == 0


class TestStopRunning:
    def test_supervisor_vanishing_before_signal(self, supervisor, monkeypatch):
        def already_gone(pid, sig):
            raise ProcessLookupError(pid)

        monkeypatch.setattr(supervisor.pid_file, "read", lambda: 424242)
        monkeypatch.setattr(main.process_utils, "pid_exists", lambda pid: True)
        monkeypatch.setattr(main.os, "kill", already_gone)
        assert main.stop_running(supervisor) == 0

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
    def test_signals_live_supervisor(self, supervisor):
        process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            supervisor.pid_file.write(process.pid)
            assert main.stop_running(supervisor) == 0
        finally:
            process.kill()
            process.wait()


class TestCheckConfiguration:
    def test_missing_app_dir(self, config, tmp_path):
        config.APP_DIR = tmp_path / "nowhere"
        assert check_configuration(config) is False

    def test_missing_manifest_is_only_a_warning(self, config, app_dir):
        _use_python_for_all_commands(config)
        (app_dir / "package.json").unlink()
        assert check_configuration(config) is True

    def test_malformed_command(self, config):
        _use_python_for_all_commands(config)
        config.START_COMMAND = "npm run start -- --port {port"
        assert check_configuration(config) is False

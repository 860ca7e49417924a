"""End-to-end tests for the monitor loop in buildkeeper.supervisor.supervisor."""

from __future__ import annotations

import os
import shutil
import signal
import sys
import time

import pytest

from buildkeeper.supervisor import Supervisor
from buildkeeper.supervisor.errors import StepResult
from buildkeeper.supervisor.fingerprint import fingerprint, fingerprint_file
from buildkeeper.supervisor.persistence import HandleFile, ProcessGroupHandle
from buildkeeper.supervisor.supervisor import MonitorState


@pytest.fixture
def supervisor(config, platform, runner):
    return Supervisor(config, platform, runner)


def _markers(app_dir):
    return (
        (app_dir / ".deps_hash").read_text().strip(),
        (app_dir / ".build_hash").read_text().strip(),
    )


class TestInitialCycle:
    def test_scenario_a_fresh_checkout(self, supervisor, platform, runner, config, app_dir):
        assert supervisor.state is MonitorState.NO_HANDLE
        supervisor.initial_cycle()

        assert [call["name"] for call in runner.calls] == ["install", "build"]
        deps_marker, build_marker = _markers(app_dir)
        assert deps_marker == fingerprint_file(app_dir / "package.json")
        aux = [app_dir / name for name in config.BUILD_AUX_FILES]
        assert build_marker == fingerprint(aux, tree=app_dir / "src")

        assert supervisor.state is MonitorState.HANDLE_RECORDED
        recorded = HandleFile(config).read()
        assert recorded == supervisor.handle == platform.spawned[0]
        assert recorded.pgid > 0

    def test_holds_off_without_build_output(self, supervisor, platform, runner):
        runner.fail_next("build", 1)
        supervisor.initial_cycle()
        assert platform.spawned == []
        assert supervisor.state is MonitorState.NO_HANDLE

        supervisor.tick()
        assert len(platform.spawned) == 1
        assert supervisor.state is MonitorState.HANDLE_RECORDED

    def test_does_not_start_on_externally_bound_port(self, supervisor, platform):
        platform.port_listening = True
        supervisor.initial_cycle()
        assert platform.spawned == []

    def test_adopts_live_recorded_group(self, config, platform, runner):
        existing = platform.spawn_group(["next", "start"], config.APP_DIR, config.SERVICE_LOG_PATH)
        HandleFile(config).write(existing)
        # Inputs already applied by the previous supervisor run.
        first = Supervisor(config, platform, runner)
        first.installer.ensure_dependencies()
        first.builder.ensure_build()

        supervisor = Supervisor(config, platform, runner)
        supervisor.initial_cycle()
        assert supervisor.handle == existing
        assert len(platform.spawned) == 1

    def test_discards_stale_recorded_group(self, supervisor, platform, config):
        HandleFile(config).write(ProcessGroupHandle(pid=999999, pgid=999999))
        supervisor.initial_cycle()
        assert supervisor.handle == platform.spawned[0]
        assert HandleFile(config).read() == platform.spawned[0]


class TestTick:
    def test_steady_state_does_nothing(self, supervisor, platform, runner):
        supervisor.initial_cycle()
        supervisor.tick()
        supervisor.tick()
        assert len(platform.spawned) == 1
        assert len(runner.calls) == 2

    def test_scenario_b_external_kill_restarts(self, supervisor, platform, runner, config):
        supervisor.initial_cycle()
        first = supervisor.handle
        platform.kill_group(first.pgid)

        supervisor.tick()
        assert supervisor.state is MonitorState.HANDLE_RECORDED
        assert supervisor.handle != first
        assert HandleFile(config).read() == supervisor.handle
        assert len(runner.calls) == 2

    def test_scenario_c_deleted_output_forces_rebuild(self, supervisor, platform, runner, app_dir):
        supervisor.initial_cycle()
        first = supervisor.handle
        markers = _markers(app_dir)
        shutil.rmtree(app_dir / ".next")

        supervisor.tick()
        assert runner.count("build") == 2
        assert (app_dir / ".next").is_dir()
        assert _markers(app_dir) == markers
        assert platform.groups[first.pgid] == set()
        assert supervisor.handle == platform.spawned[-1] != first

    def test_source_change_restarts_once(self, supervisor, platform, runner, app_dir):
        supervisor.initial_cycle()
        (app_dir / "src").mkdir()
        (app_dir / "src" / "page.tsx").write_text("export default () => null\n")

        supervisor.tick()
        assert runner.count("build") == 2
        assert runner.count("install") == 1
        assert len(platform.spawned) == 2

    def test_manifest_change_reinstalls_rebuilds_and_restarts_once(self, supervisor, platform, runner, app_dir):
        supervisor.initial_cycle()
        (app_dir / "package.json").write_text('{"name": "web", "dependencies": {"next": "15.0.0"}}\n')

        supervisor.tick()
        assert runner.count("install") == 2
        assert runner.count("build") == 2
        assert len(platform.spawned) == 2

    def test_failed_start_retried_next_tick(self, supervisor, platform):
        platform.spawn_dies = True
        supervisor.initial_cycle()
        assert supervisor.state is MonitorState.NO_HANDLE

        platform.spawn_dies = False
        supervisor.tick()
        assert supervisor.state is MonitorState.HANDLE_RECORDED

    def test_external_listener_blocks_start_without_handle(self, supervisor, platform):
        platform.port_listening = True
        supervisor.initial_cycle()
        supervisor.tick()
        assert platform.spawned == []
        assert supervisor.state is MonitorState.NO_HANDLE

    def test_step_crash_does_not_stop_the_cycle(self, supervisor, platform, monkeypatch):
        supervisor.initial_cycle()

        def explode():
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(supervisor.installer, "ensure_dependencies", explode)
        assert supervisor._run_step("install", explode) is StepResult.FAILED
        supervisor.tick()
        assert supervisor.state is MonitorState.HANDLE_RECORDED

    def test_install_failure_keeps_service_running(self, supervisor, platform, runner, app_dir):
        supervisor.initial_cycle()
        (app_dir / "package.json").write_text('{"name": "web", "dependencies": {"broken": "*"}}\n')
        runner.fail_next("install", 1, 1)
        runner.fail_next("build", 1)

        supervisor.tick()
        assert runner.count("install") == 3
        assert len(platform.spawned) == 1
        assert supervisor.state is MonitorState.HANDLE_RECORDED


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
class TestTermination:
    def test_scenario_d_sigterm_during_sleep(self, supervisor, platform, config, monkeypatch):
        previous = signal.getsignal(signal.SIGTERM)

        def sleep_until_signalled(seconds):
            os.kill(os.getpid(), signal.SIGTERM)
            time.sleep(5)
            pytest.fail("SIGTERM did not interrupt the interval sleep")

        monkeypatch.setattr(supervisor, "_wait", sleep_until_signalled)
        assert supervisor.supervision_loop() == 0

        started = platform.spawned[0]
        assert platform.groups[started.pgid] == set()
        assert (started.pgid, signal.SIGTERM) in platform.signals
        assert HandleFile(config).read() is None
        assert supervisor.pid_file.read() is None
        assert supervisor.handle is None
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_sigint_during_build(self, supervisor, platform, runner, config, monkeypatch):
        original_build = supervisor.builder.ensure_build
        calls = []

        def build_then_interrupt():
            calls.append(1)
            if len(calls) == 2:
                os.kill(os.getpid(), signal.SIGINT)
                time.sleep(5)
            return original_build()

        monkeypatch.setattr(supervisor.builder, "ensure_build", build_then_interrupt)
        monkeypatch.setattr(supervisor, "_wait", lambda seconds: None)
        assert supervisor.supervision_loop() == 0
        assert len(calls) == 2
        assert HandleFile(config).read() is None
        assert all(not members for members in platform.groups.values())

    def test_unreadable_handle_path_does_not_end_the_loop(self, supervisor, platform, config, monkeypatch):
        (config.APP_DIR / ".server_pgid").mkdir()
        monkeypatch.setattr(supervisor, "_wait", lambda seconds: supervisor.shutdown_signal_received.set())

        assert supervisor.supervision_loop() == 0
        started = platform.spawned[0]
        assert platform.groups[started.pgid] == set()
        assert supervisor.pid_file.read() is None

    def test_initial_cycle_crash_is_contained(self, supervisor, platform, monkeypatch):
        def explode():
            raise RuntimeError("handle table corrupted")

        monkeypatch.setattr(supervisor, "adopt_existing", explode)
        monkeypatch.setattr(supervisor, "_wait", lambda seconds: supervisor.shutdown_signal_received.set())
        assert supervisor.supervision_loop() == 0

    def test_refuses_second_supervisor(self, supervisor, monkeypatch):
        monkeypatch.setattr(supervisor.pid_file, "read", lambda: os.getppid())
        assert supervisor.supervision_loop() == 1

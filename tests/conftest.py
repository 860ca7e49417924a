"""Shared fixtures: isolated settings, a scripted command runner and a fake process platform."""

from __future__ import annotations

import pathlib
import signal
from typing import Dict, List, Optional, Set

import pytest

from buildkeeper.config import MergedSettings
from buildkeeper.supervisor.persistence import ProcessGroupHandle
from buildkeeper.supervisor.platform import ProcessPlatform
from buildkeeper.supervisor.process_utils import CommandResult


class FakeRunner:
    """Stands in for run_command. Successful installs/builds create their output directory."""

    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.results: Dict[str, List[int]] = {"install": [], "build": []}
        self.build_creates_output = True

    def fail_next(self, name: str, *codes: int) -> None:
        self.results[name].extend(codes)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call["name"] == name)

    def __call__(self, name, args, cwd, timeout=None, tail_lines=40) -> CommandResult:
        cwd = pathlib.Path(cwd)
        self.calls.append({
            "name": name,
            "args": list(args),
            "node_modules_present": (cwd / "node_modules").exists(),
            "lock_present": (cwd / "package-lock.json").exists(),
        })
        queued = self.results[name]
        returncode = queued.pop(0) if queued else 0
        if returncode == 0:
            if name == "install":
                (cwd / "node_modules").mkdir(exist_ok=True)
                (cwd / "package-lock.json").write_text("{}")
            elif name == "build" and self.build_creates_output:
                (cwd / ".next").mkdir(exist_ok=True)
        return CommandResult(returncode, [f"{name} exited with {returncode}"])


class FakePlatform(ProcessPlatform):
    """
    In-memory process groups. Each spawn creates a leader plus forked
    children sharing its group id, so group kills can be checked.
    """

    def __init__(self) -> None:
        self.clock = 0.0
        self.next_pid = 1000
        self.groups: Dict[int, Set[int]] = {}
        self.children_per_spawn = 2
        self.spawn_dies = False
        self.stubborn: Set[int] = set()  # groups that ignore SIGTERM
        self.group_check_available = True
        self.port_listening: Optional[bool] = False
        self.signals: List[tuple] = []
        self.spawned: List[ProcessGroupHandle] = []

    def spawn_group(self, args, cwd, log_path):
        pid = self.next_pid
        self.next_pid += 10
        if self.spawn_dies:
            self.groups[pid] = set()
            log_path.write_text("> next start\nError: Could not find a production build\n")
        else:
            self.groups[pid] = {pid} | {pid + i for i in range(1, self.children_per_spawn + 1)}
            log_path.write_text("> next start\nready on port 8080\n")
        handle = ProcessGroupHandle(pid=pid, pgid=pid)
        self.spawned.append(handle)
        return handle

    # Test helpers
    def kill_group(self, pgid: int) -> None:
        self.groups[pgid] = set()

    def kill_leader(self, pgid: int) -> None:
        self.groups[pgid].discard(pgid)

    # Capability interface
    def signal_group(self, pgid, sig):
        self.signals.append((pgid, sig))
        if not self.groups.get(pgid):
            return False
        if sig == signal.SIGTERM and pgid in self.stubborn:
            return True
        self.groups[pgid] = set()
        return True

    def group_alive(self, pgid):
        if not self.group_check_available:
            return None
        return bool(self.groups.get(pgid))

    def port_open(self, host, port):
        return self.port_listening

    def pid_alive(self, pid):
        return any(pid in members for members in self.groups.values())

    def sleep(self, seconds):
        self.clock += seconds

    def monotonic(self):
        return self.clock


@pytest.fixture
def app_dir(tmp_path):
    path = tmp_path / "app"
    path.mkdir()
    (path / "package.json").write_text('{"name": "web", "dependencies": {"next": "14.2.3"}}\n')
    return path


@pytest.fixture
def config(tmp_path, app_dir):
    return MergedSettings(
        overrides_path=tmp_path / "no-overrides.json",
        APP_DIR=app_dir,
        SERVICE_LOG_PATH=tmp_path / "service.log",
        SERVICE_PORT=18080,
        START_GRACE_PERIOD=1,
        STOP_GRACE_PERIOD=2,
        SYNC_INTERVAL=1,
        LOKI_ENABLED=False,
        INSTALL_COMMAND="npm install",
        BUILD_COMMAND="npm run build",
        START_COMMAND="npm run start -- --hostname {host} --port {port}",
        NPMRC_LINES=["legacy-peer-deps=true"],
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def platform():
    return FakePlatform()

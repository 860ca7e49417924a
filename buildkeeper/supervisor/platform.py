"""
OS capabilities the lifecycle manager and liveness prober depend on.

The supervised service is an opaque, possibly self-forking process tree that
can only be reached through its process group. ProcessPlatform names the few
operations needed for that; PosixProcessPlatform implements them with
subprocess, os and psutil. Tests substitute an in-memory implementation.

Probe methods return True or False when they could run, and None when they
could not tell (tool unavailable, access denied).
"""
import os
import time
import errno
import signal
import socket
import psutil
import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from . import process_utils
from .persistence import ProcessGroupHandle

log = logging.getLogger(__name__)


class ProcessPlatform:
    """Capability interface over process groups and ports."""

    def spawn_group(self, args: List[str], cwd: Path, log_path: Path) -> ProcessGroupHandle:
        """Launches a command as the leader of a new process group."""
        raise NotImplementedError

    def signal_group(self, pgid: int, sig: int) -> bool:
        """Sends a signal to every process in a group. Returns False if nothing received it."""
        raise NotImplementedError

    def group_alive(self, pgid: int) -> Optional[bool]:
        raise NotImplementedError

    def port_open(self, host: str, port: int) -> Optional[bool]:
        raise NotImplementedError

    def pid_alive(self, pid: int) -> Optional[bool]:
        raise NotImplementedError

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()

    def wait_group_exit(self, pgid: int, timeout: float, poll_interval: float = 0.2) -> bool:
        """
        Waits until no process of the group is left.

        :return bool: True if the group is gone (or cannot be observed), False on timeout.
        """
        deadline = self.monotonic() + timeout
        while True:
            if not self.group_alive(pgid):
                return True
            if self.monotonic() >= deadline:
                return False
            self.sleep(poll_interval)


class PosixProcessPlatform(ProcessPlatform):
    """Process group control through os.setsid/os.killpg, with psutil for inspection."""

    def __init__(self) -> None:
        # Children launched by this supervisor; polled so they never linger as zombies.
        self._children: Dict[int, subprocess.Popen] = {}

    def _reap(self) -> None:
        for pid, child in list(self._children.items()):
            if child.poll() is not None:
                log.debug(f"Reaped service process {pid} (exit code {child.returncode}).")
                del self._children[pid]

    def spawn_group(self, args: List[str], cwd: Path, log_path: Path) -> ProcessGroupHandle:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "wb") as log_file:
            child = subprocess.Popen(
                args, cwd=str(cwd), stdout=log_file, stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL, **process_utils.get_popen_creation_flags()
            )
        self._children[child.pid] = child

        try:
            pgid = os.getpgid(child.pid)
        except (OSError, AttributeError):
            pgid = child.pid
        # Before setsid() the child still sits in our group; never adopt that one.
        if hasattr(os, "getpgrp") and pgid == os.getpgrp():
            pgid = child.pid
        return ProcessGroupHandle(pid=child.pid, pgid=pgid)

    def signal_group(self, pgid: int, sig: int) -> bool:
        if not hasattr(os, "killpg"):
            return self._signal_tree(pgid, sig)
        try:
            os.killpg(pgid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError as e:
            log.warning(f"Not permitted to signal process group {pgid}: {e}")
            return False
        finally:
            self._reap()

    def _signal_tree(self, pid: int, sig: int) -> bool:
        """Fallback without process groups: signal the leader and its descendants."""
        try:
            leader = psutil.Process(pid)
            procs = [leader] + leader.children(recursive=True)
        except psutil.NoSuchProcess:
            return False
        delivered = False
        for proc in procs:
            try:
                if sig == getattr(signal, "SIGKILL", None):
                    proc.kill()
                else:
                    proc.terminate()
                delivered = True
            except psutil.NoSuchProcess:
                continue
        return delivered

    def group_members(self, pgid: int) -> Optional[List[int]]:
        """
        Lists the live (non-zombie) processes of a group.

        :return: The member pids, or None if the process table cannot be read.
        """
        if not hasattr(os, "getpgid"):
            return None
        members = []
        try:
            for proc in psutil.process_iter(["status"]):
                if proc.info["status"] == psutil.STATUS_ZOMBIE:
                    continue
                try:
                    if os.getpgid(proc.pid) == pgid:
                        members.append(proc.pid)
                except (ProcessLookupError, PermissionError):
                    continue
        except psutil.Error as e:
            log.debug(f"Process table scan failed: {e}")
            return None
        return members

    def group_alive(self, pgid: int) -> Optional[bool]:
        self._reap()
        members = self.group_members(pgid)
        if members is not None:
            return bool(members)
        if not hasattr(os, "killpg"):
            return None
        try:
            os.killpg(pgid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # The group exists but belongs to someone else.
            return True
        except OSError:
            return None

    def port_open(self, host: str, port: int) -> Optional[bool]:
        try:
            for conn in psutil.net_connections(kind="tcp"):
                if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port:
                    return True
        except (psutil.Error, OSError):
            log.debug("Listening socket table unavailable; falling back to a connect probe.")

        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except ConnectionRefusedError:
            return False
        except OSError as e:
            if e.errno in (errno.ECONNREFUSED, errno.ECONNRESET):
                return False
            log.debug(f"Port probe of {host}:{port} inconclusive: {e}")
            return None

    def pid_alive(self, pid: int) -> Optional[bool]:
        self._reap()
        try:
            return process_utils.pid_exists(pid)
        except psutil.Error:
            return None

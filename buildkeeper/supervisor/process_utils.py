import os
import sys
import signal
import psutil
import logging
import threading
import subprocess
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, NamedTuple, Optional

log = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


class CommandResult(NamedTuple):
    """Exit status and the last lines of output of a delegated command."""
    returncode: int
    tail: List[str]

    @property
    def ok(self) -> bool:
        return self.returncode == 0


#* --- Process Status ---
def pid_exists(pid: int) -> bool:
    """A wrapper for psutil.pid_exists that treats zombies as gone."""
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.Error:
        return True


#* --- Process Creation ---
def get_popen_creation_flags() -> Dict[str, Any]:
    """
    Returns platform-specific keyword arguments that start a process in its own group.

    On Windows the process is detached without a console window. Elsewhere
    `start_new_session` makes the child a session and process group leader.

    :return dict: A dictionary of keyword arguments for Popen.
    """
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def _kill_command(process: subprocess.Popen) -> None:
    """Kills a command together with anything it forked."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError):
        pass
    process.wait()


def _read_pipe(pipe, process_name: str, tail: Deque[str]) -> None:
    """Target function for the reader thread. Logs lines and keeps the tail."""
    proc_logger = logging.getLogger(f"proc.{process_name}")
    try:
        for line_bytes in iter(pipe.readline, b""):
            line = line_bytes.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            proc_logger.info(line)
    except Exception as e:
        proc_logger.debug(f"Pipe reader for {process_name} stream exited: {e}")
    finally:
        pipe.close()


def run_command(
    name: str,
    args: List[str],
    cwd: Path,
    timeout: Optional[float] = None,
    tail_lines: int = 40,
) -> CommandResult:
    """
    Runs a delegated command to completion, logging its output line by line.

    Output goes to the `proc.<name>` logger. If the wait is interrupted (for
    example by a shutdown signal) the command's process group is killed before
    the exception propagates.

    :param name: The logical step name, used for the logger.
    :param args: The command and its arguments.
    :param cwd: The working directory.
    :param timeout: Seconds to wait before killing the command, or None.
    :param tail_lines: How many trailing output lines to keep.
    :return CommandResult: The exit status and the output tail.
    """
    tail: Deque[str] = deque(maxlen=tail_lines)
    log.info(f"Running {name}: {' '.join(args)}")
    try:
        process = subprocess.Popen(
            args, cwd=str(cwd), stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL, **get_popen_creation_flags()
        )
    except FileNotFoundError as e:
        log.error(f"Cannot run {name}: {e}")
        return CommandResult(EXIT_NOT_FOUND, [str(e)])

    reader = threading.Thread(target=_read_pipe, args=(process.stdout, name, tail), daemon=True, name=f"{name}-output")
    reader.start()
    try:
        returncode = process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        log.error(f"{name.capitalize()} did not finish within {timeout} seconds. Killing it.")
        _kill_command(process)
        returncode = EXIT_TIMEOUT
    except BaseException:
        _kill_command(process)
        raise
    finally:
        reader.join(timeout=5)

    return CommandResult(returncode, list(tail))


def read_log_tail(path: Path, lines: int = 40) -> List[str]:
    """
    Returns the last lines of the captured service log.

    :param path: The service log file.
    :param lines: How many lines to return.
    :return list: The lines, empty if the log does not exist.
    """
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]
    except FileNotFoundError:
        return []
    except OSError as e:
        log.debug(f"Could not read service log '{path}': {e}")
        return []


def format_tail(lines: List[str]) -> str:
    """Indents an output tail for inclusion in a log message."""
    if not lines:
        return "  (no output captured)"
    return "\n".join(f"  | {line}" for line in lines)

import os
import sys
import time
import json
import signal
import logging
from typing import List, Optional

# Basic console logger for messages BEFORE full setup is complete.
# This logger will be replaced by the full setup later.
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)-8s - [console] - %(message)s',
    stream=sys.stdout
)
log = logging.getLogger("console")

from buildkeeper.config import effective_settings as config
from buildkeeper.log.setup import setup_logging
from buildkeeper.supervisor import Supervisor
from buildkeeper.supervisor import process_utils
from buildkeeper.supervisor.config_utils import check_configuration

HELP_TEXT = """
Usage: buildkeeper <command> [--verbose]

Commands:
  run            Install, build and serve the application, restarting on change or crash.
  status         Show the recorded service group, its liveness and the applied markers.
  stop           Stop the running supervisor (and its service), or a leftover service group.
  check-config   Validate the application directory and the delegated commands.
  help           Show this help message.

The application directory is taken from BUILDKEEPER_APP_DIR (default: current directory).
"""


def print_help() -> int:
    print(HELP_TEXT)
    return 0


def display_status(supervisor: Supervisor) -> int:
    """Prints the supervisor status as JSON."""
    status = supervisor.status()
    print(json.dumps(status, indent=4))
    return 0 if status["alive"] else 3


def stop_running(supervisor: Supervisor) -> int:
    """
    Stops a running supervisor through SIGTERM so it stops its own service.
    Without a live supervisor the recorded service group is stopped directly.
    """
    supervisor_pid = supervisor.pid_file.read()
    if supervisor_pid and process_utils.pid_exists(supervisor_pid):
        log.info(f"Sending SIGTERM to supervisor (PID {supervisor_pid})...")
        try:
            os.kill(supervisor_pid, signal.SIGTERM)
        except ProcessLookupError:
            log.info("Supervisor already exited.")
            return 0
        deadline = time.monotonic() + supervisor.config.STOP_GRACE_PERIOD + 5
        while time.monotonic() < deadline:
            if not process_utils.pid_exists(supervisor_pid):
                log.info("Supervisor stopped.")
                return 0
            time.sleep(0.5)
        log.error(f"Supervisor (PID {supervisor_pid}) did not exit in time.")
        return 1

    log.info("No running supervisor found. Stopping any recorded service group...")
    supervisor.lifecycle.stop()
    return 0


def execute_command(command: str, args: List[str], supervisor: Optional[Supervisor] = None) -> int:
    """
    Executes a single command.

    :param command: The main command string (e.g., 'run', 'status').
    :param args: A list of remaining arguments for the command.
    :param supervisor: The supervisor to act on; built from the effective settings if omitted.
    :return int: The process exit code.
    """
    log.debug(f"Executing command: {command}, args: {args}")
    supervisor = supervisor or Supervisor(config)
    command_map = {
        "run": supervisor.supervision_loop,
        "status": lambda: display_status(supervisor),
        "stop": lambda: stop_running(supervisor),
        "check-config": lambda: 0 if check_configuration(supervisor.config) else 1,
        "help": print_help,
    }

    if command not in command_map:
        log.info(f"Unknown command: '{command}'. Type 'help' for a list of commands.")
        return 2
    return command_map[command]()


def main(argv: List[str] = None) -> int:
    """The main entry point for the command line."""
    args = list(sys.argv[1:] if argv is None else argv)

    console_level = logging.INFO
    if "--verbose" in args:
        console_level = logging.DEBUG
        args.remove("--verbose")

    command = args[0].lower() if args else "help"
    log_file = config.SUPERVISOR_LOG_PATH if command == "run" and config.LOG_FILE_ENABLED else None
    setup_logging(console_level, log_file=log_file)

    return execute_command(command, args[1:])


if __name__ == "__main__":
    sys.exit(main())

"""
This is a minimal entry point script for the supervisor process.

Its sole responsibility is to name the process, set up logging, instantiate
the Supervisor and run the supervision loop. Container images use it as
their command: `python -m buildkeeper.script_entry.supervisor`.
"""
import sys
import setproctitle
from buildkeeper.config import effective_settings as config
from buildkeeper.log.setup import setup_logging
from buildkeeper.supervisor import Supervisor


if __name__ == "__main__":
    setproctitle.setproctitle("buildkeeper - Supervisor")
    setup_logging(log_file=config.SUPERVISOR_LOG_PATH if config.LOG_FILE_ENABLED else None)
    sys.exit(Supervisor(config).supervision_loop())

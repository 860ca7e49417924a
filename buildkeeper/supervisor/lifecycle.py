import signal
import logging
from typing import Optional

from buildkeeper.config import MergedSettings
from . import process_utils
from .errors import StartError, StopError
from .liveness import LivenessProber
from .persistence import HandleFile, ProcessGroupHandle
from .platform import ProcessPlatform

log = logging.getLogger(__name__)

SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class LifecycleManager:
    """
    Starts and stops the service as a whole process group.

    The service may fork children that outlive their parent, so it is launched
    as the leader of a new session and the group id, not the launched pid, is
    the unit of control. The handle is persisted so a restarted supervisor can
    still reach the group.
    """

    def __init__(
        self,
        config: MergedSettings,
        platform: ProcessPlatform,
        prober: LivenessProber,
        handle_file: HandleFile,
    ) -> None:
        self.config = config
        self.platform = platform
        self.prober = prober
        self.handle_file = handle_file

    def service_log_tail(self) -> str:
        lines = process_utils.read_log_tail(self.config.SERVICE_LOG_PATH, self.config.LOG_TAIL_LINES)
        return process_utils.format_tail(lines)

    def _verify_started(self, handle: ProcessGroupHandle) -> bool:
        """Any of launcher, group or port being alive counts as a successful start."""
        if self.platform.pid_alive(handle.pid):
            log.debug(f"Launcher {handle.pid} is running.")
            return True
        if self.platform.group_alive(handle.pgid):
            log.debug(f"Launcher {handle.pid} exited but group {handle.pgid} has live members.")
            return True
        if self.platform.port_open(self.prober.host, self.prober.port):
            log.debug(f"Launcher and group are gone but port {self.prober.port} is listening.")
            return True
        return False

    def start(self) -> ProcessGroupHandle:
        """
        Launches the service and verifies it stayed up through the grace period.

        :return ProcessGroupHandle: The recorded handle of the new group.
        :raises StartError: If the command cannot be launched or exits immediately.
        """
        previous = self.handle_file.read()
        if previous is not None:
            log.warning(f"A handle for group {previous.pgid} is still recorded. Stopping it first.")
            self.stop(previous)

        args = self.config.split_command("START_COMMAND")
        log.info(f"Starting service: {' '.join(args)}")
        try:
            handle = self.platform.spawn_group(args, self.config.APP_DIR, self.config.SERVICE_LOG_PATH)
        except OSError as e:
            raise StartError(f"Could not launch the service: {e}") from e

        self.handle_file.write(handle)
        log.info(f"Service launched with PID {handle.pid} in process group {handle.pgid}.")

        self.platform.sleep(self.config.START_GRACE_PERIOD)
        if not self._verify_started(handle):
            tail = process_utils.read_log_tail(self.config.SERVICE_LOG_PATH, self.config.LOG_TAIL_LINES)
            self.stop(handle)
            raise StartError(
                f"Service exited within {self.config.START_GRACE_PERIOD}s of launch.", tail
            )
        return handle

    def _terminate_group(self, handle: ProcessGroupHandle) -> None:
        """Sends SIGTERM to the group, then SIGKILL to whatever is left after the grace period."""
        if not self.platform.signal_group(handle.pgid, signal.SIGTERM):
            log.info(f"No process left in group {handle.pgid}; nothing to stop.")
            return

        log.info(f"Sent SIGTERM to process group {handle.pgid}. Waiting up to {self.config.STOP_GRACE_PERIOD}s...")
        if self.platform.wait_group_exit(handle.pgid, self.config.STOP_GRACE_PERIOD):
            log.info(f"Process group {handle.pgid} exited gracefully.")
            return

        log.warning(f"Process group {handle.pgid} did not terminate gracefully. Forcing shutdown...")
        self.platform.signal_group(handle.pgid, SIGKILL)
        if not self.platform.wait_group_exit(handle.pgid, 2):
            raise StopError(f"Process group {handle.pgid} survived SIGKILL.")

    def stop(self, handle: Optional[ProcessGroupHandle] = None) -> None:
        """
        Stops the service group. Best effort and idempotent.

        The persisted handle is removed afterwards whether or not any process
        actually received a signal.

        :param handle: The group to stop; defaults to the persisted handle.
        """
        try:
            handle = handle or self.handle_file.read()
            if handle is None:
                log.debug("No service handle recorded; nothing to stop.")
                return
            self._terminate_group(handle)
        except StopError as e:
            log.error(f"Stop incomplete: {e}")
        except Exception as e:
            log.error(f"Unexpected error while stopping the service group: {e}", exc_info=True)
        finally:
            self.handle_file.remove()

import os
import enum
import time
import signal
import logging
import threading
from typing import Any, Callable, Dict, Optional

from buildkeeper.config import MergedSettings, effective_settings
from . import process_utils
from .builder import Builder
from .errors import ShutdownRequested, StartError, StepResult, SupervisorError
from .installer import Installer
from .lifecycle import LifecycleManager
from .liveness import LivenessProber
from .persistence import BUILD, DEPENDENCIES, HandleFile, ProcessGroupHandle, StateStore, SupervisorPidFile
from .platform import PosixProcessPlatform, ProcessPlatform

log = logging.getLogger(__name__)


class MonitorState(enum.Enum):
    NO_HANDLE = "no_handle"
    HANDLE_RECORDED = "handle_recorded"


class Supervisor:
    """
    Keeps the application built and exactly one service instance running.

    Every SYNC_INTERVAL seconds the loop restarts a dead service, re-runs the
    installer and the builder, and replaces the running instance when either
    of them changed something. The loop is single threaded; the only way out
    is SIGINT/SIGTERM, which always stops the service group first.
    """

    def __init__(
        self,
        config: Optional[MergedSettings] = None,
        platform: Optional[ProcessPlatform] = None,
        runner: Callable[..., process_utils.CommandResult] = process_utils.run_command,
    ) -> None:
        """Initializes the Supervisor state."""
        self.config = config or effective_settings
        self.platform = platform or PosixProcessPlatform()

        self.store = StateStore(self.config)
        self.handle_file = HandleFile(self.config)
        self.pid_file = SupervisorPidFile(self.config)
        self.prober = LivenessProber(self.platform, self.config.PROBE_HOST, self.config.SERVICE_PORT)
        self.lifecycle = LifecycleManager(self.config, self.platform, self.prober, self.handle_file)
        self.installer = Installer(self.config, self.store, runner)
        self.builder = Builder(self.config, self.store, runner)

        # The single handle slot. Owned by the loop, never shared.
        self.handle: Optional[ProcessGroupHandle] = None
        self.shutdown_signal_received = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def state(self) -> MonitorState:
        return MonitorState.NO_HANDLE if self.handle is None else MonitorState.HANDLE_RECORDED

    #* --- Steps ---
    def _run_step(self, name: str, step: Callable[[], StepResult]) -> StepResult:
        """Runs install or build, turning any failure into StepResult.FAILED."""
        try:
            return step()
        except SupervisorError as e:
            log.error(f"{name.capitalize()} failed: {e}\n{process_utils.format_tail(e.output_tail)}")
        except Exception as e:
            log.error(f"Unexpected error during {name}: {e}", exc_info=True)
        log.info(f"{name.capitalize()} will be retried on the next cycle.")
        return StepResult.FAILED

    def _sync_inputs(self) -> bool:
        """Runs the installer then the builder. True if either changed anything."""
        deps = self._run_step("install", self.installer.ensure_dependencies)
        build = self._run_step("build", self.builder.ensure_build)
        return StepResult.CHANGED in (deps, build)

    def _start_service(self) -> bool:
        """Starts the service unless there is nothing built to serve yet."""
        if not self.builder.output_exists():
            log.warning(
                f"No build output at '{self.builder.output_dir}'. "
                "Holding off the service start until a build succeeds."
            )
            return False
        try:
            self.handle = self.lifecycle.start()
            return True
        except StartError as e:
            log.error(f"Service failed to start: {e}\n{process_utils.format_tail(e.output_tail)}")
        except Exception as e:
            log.error(f"Unexpected error while starting the service: {e}", exc_info=True)
        self.handle = None
        return False

    def _stop_service(self) -> None:
        self.lifecycle.stop(self.handle)
        self.handle = None

    def _restart_service(self) -> None:
        self._stop_service()
        self._start_service()

    #* --- Cycles ---
    def adopt_existing(self) -> None:
        """Takes over a service group recorded by a previous supervisor, if it still runs."""
        recorded = self.handle_file.read()
        if recorded is None:
            return
        if self.prober.is_alive(recorded):
            log.info(f"Adopting running service group {recorded.pgid} (PID {recorded.pid}).")
            self.handle = recorded
        else:
            log.info(f"Discarding stale handle for process group {recorded.pgid}.")
            self.handle_file.remove()

    def initial_cycle(self) -> None:
        """Installs, builds and starts once before the interval loop begins."""
        self.adopt_existing()
        changed = self._sync_inputs()

        if self.handle is not None:
            if changed:
                log.info("Inputs changed since the adopted service started; restarting it...")
                self._restart_service()
        elif self.prober.port_in_use():
            log.warning(f"Port {self.config.SERVICE_PORT} is already in use by another process. Not starting.")
        else:
            self._start_service()

    def tick(self) -> None:
        """One monitor cycle: liveness first, then install and build."""
        if self.handle is not None:
            if not self.prober.is_alive(self.handle):
                log.warning(
                    f"Service group {self.handle.pgid} exited; restarting...\n"
                    f"{self.lifecycle.service_log_tail()}"
                )
                self.handle_file.remove()
                self.handle = None
                self._start_service()
        elif not self.prober.port_in_use():
            self._start_service()
        else:
            log.debug(f"No handle, but port {self.config.SERVICE_PORT} is bound externally. Not starting.")

        if self._sync_inputs():
            log.info("Changes detected; restarting the service...")
            self._restart_service()

    #* --- Signals ---
    def _handle_signal(self, signum: int, frame: Any) -> None:
        if self.shutdown_signal_received.is_set():
            log.warning(f"Received {signal.Signals(signum).name} again; shutdown already in progress.")
            return
        self.shutdown_signal_received.set()
        raise ShutdownRequested(signum)

    def _install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _wait(self, seconds: float) -> None:
        """Sleeps between ticks. Returns early once shutdown was requested."""
        self.shutdown_signal_received.wait(seconds)

    #* --- Entry ---
    def check_if_already_running(self) -> bool:
        supervisor_pid = self.pid_file.read()
        if supervisor_pid and supervisor_pid != os.getpid() and process_utils.pid_exists(supervisor_pid):
            log.error(f"A supervisor (PID {supervisor_pid}) is already running for '{self.config.APP_DIR}'.")
            return True
        return False

    def supervision_loop(self) -> int:
        """
        Runs the initial cycle and then the interval-driven monitor loop.

        :return int: The process exit code.
        """
        if self.check_if_already_running():
            return 1

        self.shutdown_signal_received.clear()
        start_time = time.time()
        try:
            self._install_signal_handlers()
            self.pid_file.write(os.getpid())
            log.info(
                f"Supervisor started for '{self.config.APP_DIR}'. "
                f"Checking every {self.config.SYNC_INTERVAL} seconds."
            )
            try:
                self.initial_cycle()
            except Exception as e:
                log.critical(f"Error in initial supervisor cycle: {e}", exc_info=True)
            while not self.shutdown_signal_received.is_set():
                self._wait(self.config.SYNC_INTERVAL)
                if self.shutdown_signal_received.is_set():
                    break
                try:
                    self.tick()
                except Exception as e:
                    log.critical(f"Error in supervisor loop: {e}", exc_info=True)
        except ShutdownRequested as e:
            log.info(f"Received {signal.Signals(e.signum).name}. Stopping the service...")
        except KeyboardInterrupt:
            log.info("Supervisor loop interrupted by user. Stopping the service...")
        finally:
            self.shutdown_signal_received.set()
            self._stop_service()
            self.pid_file.remove()
            self._restore_signal_handlers()
            runtime = time.strftime('%H:%M:%S', time.gmtime(time.time() - start_time))
            log.info(f"Supervisor stopped. Total runtime: {runtime}")
        return 0

    def status(self) -> Dict[str, Any]:
        """Reports the recorded handle, its liveness and the applied markers."""
        handle = self.handle_file.read()
        return {
            "app_dir": str(self.config.APP_DIR),
            "supervisor_pid": self.pid_file.read(),
            "handle": handle._asdict() if handle else None,
            "alive": self.prober.is_alive(handle),
            "port_in_use": self.prober.port_in_use(),
            "dependencies_marker": self.store.load(DEPENDENCIES),
            "build_marker": self.store.load(BUILD),
            "build_output_exists": self.builder.output_exists(),
        }

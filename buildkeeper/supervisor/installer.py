import shutil
import logging
from typing import Callable

from buildkeeper.config import MergedSettings
from . import config_utils, process_utils
from .errors import InstallError, StepResult
from .fingerprint import fingerprint_file
from .persistence import DEPENDENCIES, StateStore

log = logging.getLogger(__name__)


class Installer:
    """Keeps the dependency tree in line with the manifest."""

    def __init__(
        self,
        config: MergedSettings,
        store: StateStore,
        runner: Callable[..., process_utils.CommandResult] = process_utils.run_command,
    ) -> None:
        self.config = config
        self.store = store
        self.runner = runner
        self.manifest_path = config.app_path(config.MANIFEST_FILE)
        self.dependency_dir = config.app_path(config.DEPENDENCY_DIR)
        self.lock_path = config.app_path(config.LOCK_FILE)

    def _install(self) -> process_utils.CommandResult:
        return self.runner(
            "install",
            self.config.split_command("INSTALL_COMMAND"),
            self.config.APP_DIR,
            timeout=self.config.INSTALL_TIMEOUT,
            tail_lines=self.config.LOG_TAIL_LINES,
        )

    def _hard_reset(self) -> None:
        """Deletes the dependency tree and the lock file before a clean reinstall."""
        if self.dependency_dir.exists():
            shutil.rmtree(self.dependency_dir)
        self.lock_path.unlink(missing_ok=True)
        log.info(f"Removed '{self.dependency_dir.name}' and '{self.lock_path.name}'.")

    def ensure_dependencies(self) -> StepResult:
        """
        Installs dependencies if the manifest changed or the tree is missing.

        A failed install is retried once after a hard reset. The marker is only
        written after a successful install, so a failure is retried next cycle.

        :return StepResult: CHANGED after an install, UNCHANGED otherwise.
        :raises InstallError: If the install and the retry both failed.
        :raises FingerprintError: If the manifest cannot be read.
        """
        current = fingerprint_file(self.manifest_path)
        stored = self.store.load(DEPENDENCIES)

        if current == stored and self.dependency_dir.is_dir():
            return StepResult.UNCHANGED

        if not self.dependency_dir.is_dir():
            log.info(f"Dependency tree '{self.dependency_dir.name}' is missing. Installing dependencies...")
        else:
            log.info("Manifest changed. Installing dependencies...")

        config_utils.write_npmrc(self.config)
        result = self._install()
        if not result.ok:
            log.warning(f"Standard install failed (exit code {result.returncode}). Trying a hard reset...")
            try:
                self._hard_reset()
            except OSError as e:
                raise InstallError(f"Hard reset before reinstall failed: {e}", result.tail) from e
            result = self._install()
            if not result.ok:
                raise InstallError(
                    f"Install failed again after a hard reset (exit code {result.returncode}).", result.tail
                )

        self.store.save(DEPENDENCIES, current)
        log.info("Dependencies installed.")
        return StepResult.CHANGED

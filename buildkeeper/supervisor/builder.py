import logging
from pathlib import Path
from typing import Callable, List

from buildkeeper.config import MergedSettings
from . import process_utils
from .errors import BuildError, StepResult
from .fingerprint import fingerprint
from .persistence import BUILD, StateStore

log = logging.getLogger(__name__)


class Builder:
    """Keeps the build output in line with the source tree and build config."""

    def __init__(
        self,
        config: MergedSettings,
        store: StateStore,
        runner: Callable[..., process_utils.CommandResult] = process_utils.run_command,
    ) -> None:
        self.config = config
        self.store = store
        self.runner = runner
        self.source_dir = config.app_path(config.SOURCE_DIR)
        self.output_dir = config.app_path(config.BUILD_OUTPUT_DIR)

    @property
    def aux_files(self) -> List[Path]:
        return [self.config.app_path(name) for name in self.config.BUILD_AUX_FILES]

    def current_fingerprint(self) -> str:
        return fingerprint(self.aux_files, tree=self.source_dir)

    def output_exists(self) -> bool:
        return self.output_dir.is_dir()

    def ensure_build(self) -> StepResult:
        """
        Builds if the inputs changed or the output directory is missing.

        The output directory is checked after a successful build as well: a
        build can exit zero without producing anything usable.

        :return StepResult: CHANGED after a verified build, UNCHANGED otherwise.
        :raises BuildError: If the build fails or leaves no output directory.
        :raises FingerprintError: If an input cannot be read.
        """
        current = self.current_fingerprint()
        stored = self.store.load(BUILD)

        if current == stored and self.output_exists():
            return StepResult.UNCHANGED

        if not self.output_exists():
            log.info(f"Build output '{self.output_dir.name}' is missing. Building...")
        else:
            log.info("Build inputs changed. Building...")

        result = self.runner(
            "build",
            self.config.split_command("BUILD_COMMAND"),
            self.config.APP_DIR,
            timeout=self.config.BUILD_TIMEOUT,
            tail_lines=self.config.LOG_TAIL_LINES,
        )
        if not result.ok:
            raise BuildError(f"Build failed (exit code {result.returncode}).", result.tail)
        if not self.output_exists():
            raise BuildError(
                f"Build reported success but '{self.output_dir.name}' was not produced.", result.tail
            )

        self.store.save(BUILD, current)
        log.info("Build complete.")
        return StepResult.CHANGED

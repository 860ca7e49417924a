import logging
from pathlib import Path
from typing import Dict, NamedTuple, Optional

from buildkeeper.config import MergedSettings

log = logging.getLogger(__name__)

DEPENDENCIES = "dependencies"
BUILD = "build"


class ProcessGroupHandle(NamedTuple):
    """The launched service leader and the process group it heads."""
    pid: int
    pgid: int


def _write_atomically(path: Path, content: str) -> None:
    """Writes a small text file through a temp file so readers never see half a write."""
    temp_path = path.with_name(path.name + ".tmp")
    try:
        temp_path.write_text(content)
        temp_path.replace(path)
    finally:
        temp_path.unlink(missing_ok=True)


class StateStore:
    """
    Persists the last applied fingerprint per step kind.

    Each kind lives in its own marker file holding a single digest. A missing
    marker is a normal state (first run or invalidated), never an error.
    """

    def __init__(self, config: MergedSettings) -> None:
        self.paths: Dict[str, Path] = {
            DEPENDENCIES: config.app_path(config.DEPS_MARKER_FILE),
            BUILD: config.app_path(config.BUILD_MARKER_FILE),
        }

    def _path(self, kind: str) -> Path:
        try:
            return self.paths[kind]
        except KeyError:
            raise ValueError(f"Unknown marker kind '{kind}'.") from None

    def load(self, kind: str) -> Optional[str]:
        """
        Reads a marker.

        :param kind: 'dependencies' or 'build'.
        :return: The stored fingerprint, or None if no marker is present.
        """
        try:
            value = self._path(kind).read_text().strip()
        except FileNotFoundError:
            return None
        return value or None

    def save(self, kind: str, fingerprint: str) -> None:
        """Records the fingerprint a step has just applied successfully."""
        _write_atomically(self._path(kind), fingerprint + "\n")
        log.debug(f"Saved {kind} marker: {fingerprint}")

    def invalidate(self, kind: str) -> None:
        """Removes a marker so the next cycle redoes the step."""
        self._path(kind).unlink(missing_ok=True)
        log.info(f"Invalidated {kind} marker.")


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.error(f"Failed to remove '{path}': {e}")


class HandleFile:
    """
    Persists the active process group handle.

    Line one holds the process group id, line two the leader pid. A file with
    a single line is read as a leader whose pid is its own group id.
    """

    def __init__(self, config: MergedSettings) -> None:
        self.path = config.app_path(config.HANDLE_FILE)

    def read(self) -> Optional[ProcessGroupHandle]:
        """
        Returns the recorded handle, or None if there is no valid one.
        Unparseable files are removed; unreadable ones are reported and ignored.
        """
        try:
            lines = self.path.read_text().split()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            log.error(f"Cannot read handle file '{self.path}': {e}")
            return None
        try:
            pgid = int(lines[0])
            pid = int(lines[1]) if len(lines) > 1 else pgid
        except (IndexError, ValueError):
            log.warning(f"Discarding unreadable handle file '{self.path}'.")
            _remove_quietly(self.path)
            return None
        if pgid <= 0 or pid <= 0:
            _remove_quietly(self.path)
            return None
        return ProcessGroupHandle(pid=pid, pgid=pgid)

    def write(self, handle: ProcessGroupHandle) -> None:
        try:
            _write_atomically(self.path, f"{handle.pgid}\n{handle.pid}\n")
        except OSError as e:
            log.error(f"Failed to write handle file: {e}", exc_info=True)

    def remove(self) -> None:
        _remove_quietly(self.path)


class SupervisorPidFile:
    """Records the running supervisor so a second one refuses to start and `stop` can reach it."""

    def __init__(self, config: MergedSettings) -> None:
        self.path = config.app_path(config.SUPERVISOR_PID_FILE)

    def read(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except FileNotFoundError:
            return None
        except ValueError:
            _remove_quietly(self.path)
            return None
        except OSError as e:
            log.error(f"Cannot read PID file '{self.path}': {e}")
            return None

    def write(self, pid: int) -> None:
        try:
            _write_atomically(self.path, f"{pid}\n")
        except OSError as e:
            log.error(f"Failed to write PID file: {e}", exc_info=True)

    def remove(self) -> None:
        _remove_quietly(self.path)

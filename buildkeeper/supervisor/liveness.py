import logging
from typing import Callable, List, Optional, Tuple

from .persistence import ProcessGroupHandle
from .platform import ProcessPlatform

log = logging.getLogger(__name__)


class LivenessProber:
    """
    Decides whether the supervised service is up.

    No single signal is reliable everywhere, so the checks form an ordered
    fallback chain. Each one answers True, False or None (could not tell);
    the next check only runs after a None.

    1. Process group membership: a dead leader with live children is alive.
    2. Listening port: a re-parented process that still holds the port is alive,
       a port found closed is dead.
    3. Leader pid: the last resort.
    """

    def __init__(self, platform: ProcessPlatform, host: str, port: int) -> None:
        self.platform = platform
        self.host = host
        self.port = port

    def _check_group(self, handle: ProcessGroupHandle) -> Optional[bool]:
        return self.platform.group_alive(handle.pgid)

    def _check_port(self, handle: ProcessGroupHandle) -> Optional[bool]:
        return self.platform.port_open(self.host, self.port)

    def _check_pid(self, handle: ProcessGroupHandle) -> Optional[bool]:
        return self.platform.pid_alive(handle.pid)

    def is_alive(self, handle: Optional[ProcessGroupHandle]) -> bool:
        """
        Evaluates the fallback chain for a handle.

        :param handle: The recorded handle; None reads as dead.
        :return bool: True if the service is considered alive.
        """
        if handle is None:
            return False

        checks: List[Tuple[str, Callable[[ProcessGroupHandle], Optional[bool]]]] = [
            ("process group", self._check_group),
            ("service port", self._check_port),
            ("leader pid", self._check_pid),
        ]
        for name, check in checks:
            verdict = check(handle)
            if verdict is not None:
                log.debug(f"Liveness of group {handle.pgid} decided by {name} check: {verdict}")
                return verdict
            log.debug(f"Liveness {name} check for group {handle.pgid} was inconclusive.")

        log.warning(f"Could not determine liveness of group {handle.pgid}; treating it as dead.")
        return False

    def port_in_use(self) -> bool:
        """True if something is already listening on the service port."""
        return bool(self.platform.port_open(self.host, self.port))

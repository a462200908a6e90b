import logging
import shlex
import subprocess
import sys
import threading
import time
from collections.abc import Callable, Sequence

logger = logging.getLogger("coderider_proxy")

ReauthTrigger = Callable[[], None]


def default_reauth_command() -> list[str]:
    return [sys.executable, "-m", "coderider_cli.main", "oauth-setup", "--no-prompt"]


class DetachedReauthTrigger:
    """Launches the interactive OAuth setup as a detached background process.

    The launch is fire-and-forget: nothing waits on the child, and a failure to
    start it is logged and otherwise invisible to the request that triggered it.
    Launches closer together than ``cooldown_seconds`` are dropped.
    """

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        cooldown_seconds: float = 300.0,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        if command is None:
            self._command = default_reauth_command()
        elif isinstance(command, str):
            self._command = shlex.split(command)
        else:
            self._command = list(command)
        self._cooldown_seconds = cooldown_seconds
        self._popen = popen
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._last_launch: float | None = None

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def __call__(self) -> None:
        with self._lock:
            now = self._monotonic()
            if self._last_launch is not None and now - self._last_launch < self._cooldown_seconds:
                logger.info("reauth_launch_skipped_cooldown")
                return
            self._last_launch = now

        try:
            self._popen(
                self._command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
        except OSError:
            logger.exception("reauth_launch_failed", extra={"command": self._command})
            return
        logger.warning("reauth_launched", extra={"command": self._command})


def fire_reauth(trigger: ReauthTrigger | None) -> None:
    if trigger is None:
        return
    try:
        trigger()
    except Exception:
        logger.exception("reauth_trigger_failed")

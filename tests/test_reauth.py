import subprocess
from unittest.mock import MagicMock

from coderider_proxy.reauth import DetachedReauthTrigger, default_reauth_command, fire_reauth


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_launches_detached_process():
    popen = MagicMock()
    trigger = DetachedReauthTrigger("coderider-proxy oauth-setup --no-prompt", popen=popen)

    trigger()

    args, kwargs = popen.call_args
    assert args[0] == ["coderider-proxy", "oauth-setup", "--no-prompt"]
    assert kwargs["start_new_session"] is True
    assert kwargs["stdin"] is subprocess.DEVNULL


def test_cooldown_suppresses_repeat_launches():
    popen = MagicMock()
    clock = FakeMonotonic()
    trigger = DetachedReauthTrigger(["reauth"], cooldown_seconds=300, popen=popen, monotonic=clock)

    trigger()
    clock.now += 120
    trigger()
    assert popen.call_count == 1

    clock.now += 181
    trigger()
    assert popen.call_count == 2


def test_launch_failure_is_swallowed():
    popen = MagicMock(side_effect=FileNotFoundError("no such command"))
    trigger = DetachedReauthTrigger(["missing-binary"], popen=popen)

    trigger()

    popen.assert_called_once()


def test_default_command_runs_setup_without_prompt():
    command = DetachedReauthTrigger().command
    assert command == default_reauth_command()
    assert command[-2:] == ["oauth-setup", "--no-prompt"]


def test_fire_reauth_tolerates_missing_and_failing_triggers():
    fire_reauth(None)
    fire_reauth(MagicMock(side_effect=RuntimeError("boom")))

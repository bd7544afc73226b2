import subprocess

import pytest

from kvm_fleet.clients import commands
from kvm_fleet.clients.commands import CommandRunner, RetryPolicy
from kvm_fleet.errors import CommandFailure


class ScriptedRun:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append(argv)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return subprocess.CompletedProcess(argv, 0, stdout=result, stderr="")


def _failure(argv, stderr="error: domain is locked"):
    return subprocess.CalledProcessError(1, argv, output="", stderr=stderr)


def test_run_retries_then_succeeds(monkeypatch):
    argv = ["virsh", "start", "lab01"]
    fake = ScriptedRun([_failure(argv), "Domain lab01 started\n"])
    sleeps = []
    monkeypatch.setattr(commands.subprocess, "run", fake)
    monkeypatch.setattr(commands.time, "sleep", sleeps.append)

    runner = CommandRunner(RetryPolicy(attempts=3, sleep_sec=1, backoff=2))
    completed = runner.run(argv)

    assert completed.stdout == "Domain lab01 started\n"
    assert len(fake.calls) == 2
    assert sleeps == [1]


def test_run_raises_after_attempts_with_backoff(monkeypatch):
    argv = ["virsh", "start", "lab01"]
    fake = ScriptedRun([_failure(argv)] * 3)
    sleeps = []
    monkeypatch.setattr(commands.subprocess, "run", fake)
    monkeypatch.setattr(commands.time, "sleep", sleeps.append)

    runner = CommandRunner(RetryPolicy(attempts=3, sleep_sec=1, backoff=2))
    with pytest.raises(CommandFailure) as info:
        runner.run(argv)

    assert info.value.attempts == 3
    assert info.value.returncode == 1
    assert info.value.detail == "error: domain is locked"
    assert sleeps == [1, 2]


def test_missing_binary_is_not_retried(monkeypatch):
    fake = ScriptedRun([FileNotFoundError("virt-clone")])
    monkeypatch.setattr(commands.subprocess, "run", fake)

    runner = CommandRunner(RetryPolicy(attempts=5, sleep_sec=0))
    with pytest.raises(CommandFailure):
        runner.run(["virt-clone", "--original", "tmpl"])
    assert len(fake.calls) == 1


def test_dry_run_does_not_execute(monkeypatch):
    def explode(*_args, **_kwargs):
        raise AssertionError("subprocess must not run in dry-run")

    monkeypatch.setattr(commands.subprocess, "run", explode)
    runner = CommandRunner(RetryPolicy(attempts=1, sleep_sec=0), dry_run=True)
    assert runner.run(["virsh", "destroy", "lab01"]).returncode == 0
    assert runner.succeeds(["virsh", "dominfo", "lab01"])


def test_succeeds_reports_exit_status(monkeypatch):
    def fake_run(argv, **_kwargs):
        return subprocess.CompletedProcess(argv, 1, stdout="", stderr="failed to get domain")

    monkeypatch.setattr(commands.subprocess, "run", fake_run)
    runner = CommandRunner(RetryPolicy(attempts=1, sleep_sec=0))
    assert not runner.succeeds(["virsh", "dominfo", "ghost01"])

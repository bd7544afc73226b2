import logging
import shlex
import subprocess
import time

from kvm_fleet.errors import CommandFailure
from kvm_fleet.metrics import metrics


logger = logging.getLogger(__name__)


class RetryPolicy:
    def __init__(self, attempts: int, sleep_sec: float, backoff: float = 1.0):
        self.attempts = attempts
        self.sleep_sec = sleep_sec
        self.backoff = backoff

    def delay(self, attempt: int) -> float:
        return self.sleep_sec * (self.backoff ** (attempt - 1))


NO_RETRY = RetryPolicy(attempts=1, sleep_sec=0)


class CommandRunner:
    def __init__(self, retry: RetryPolicy, dry_run: bool = False, timeout_sec: float | None = None):
        self.retry = retry
        self.dry_run = dry_run
        self.timeout_sec = timeout_sec

    def run(
        self, argv: list[str], *, retry: RetryPolicy | None = None
    ) -> subprocess.CompletedProcess:
        policy = retry or self.retry
        command = shlex.join(argv)
        if self.dry_run:
            logger.info("dry-run command=%s", command)
            return subprocess.CompletedProcess(argv, 0, stdout="", stderr="")

        returncode: int | None = None
        detail = "unknown error"
        error: Exception | None = None
        for attempt in range(1, policy.attempts + 1):
            logger.debug("running command=%s attempt=%s", command, attempt)
            try:
                return subprocess.run(
                    argv,
                    check=True,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_sec,
                )
            except subprocess.CalledProcessError as exc:
                error = exc
                returncode = exc.returncode
                stderr = (exc.stderr or "").strip()
                stdout = (exc.stdout or "").strip()
                detail = (stderr or stdout or str(exc))[:500]
            except subprocess.TimeoutExpired as exc:
                error = exc
                returncode = None
                detail = f"timed out after {exc.timeout}s"
            except OSError as exc:
                # missing binary will not appear between attempts
                raise CommandFailure(
                    argv=argv, attempts=attempt, returncode=None, detail=str(exc)
                ) from exc
            if attempt < policy.attempts:
                delay = policy.delay(attempt)
                logger.warning(
                    "command failed, retrying command=%s attempt=%s delay=%.1fs detail=%s",
                    command,
                    attempt,
                    delay,
                    detail,
                )
                metrics.inc("command_retries_total")
                time.sleep(delay)
        raise CommandFailure(
            argv=argv,
            attempts=policy.attempts,
            returncode=returncode,
            detail=detail,
        ) from error

    def succeeds(self, argv: list[str]) -> bool:
        """Run once and report the exit status instead of raising."""
        if self.dry_run:
            logger.info("dry-run check command=%s", shlex.join(argv))
            return True
        try:
            completed = subprocess.run(
                argv, capture_output=True, text=True, timeout=self.timeout_sec
            )
        except subprocess.TimeoutExpired:
            logger.warning("check timed out command=%s", shlex.join(argv))
            return False
        except OSError as exc:
            raise CommandFailure(
                argv=argv, attempts=1, returncode=None, detail=str(exc)
            ) from exc
        return completed.returncode == 0

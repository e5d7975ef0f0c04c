"""HealthChecker — readiness polling of deployed environments."""

from __future__ import annotations

import http.client
import logging
import threading
import time
import urllib.error
import urllib.request
from typing import Callable, Iterable

from pydantic import BaseModel, Field

from conveyor.config import DEFAULT_EXPECTED_STATUS, DEFAULT_PROBE_TIMEOUT_SECONDS
from conveyor.deployment.context import wait_for_cancel
from conveyor.errors import HealthCheckTimeout
from conveyor.models.environment import Environment
from conveyor.models.pipeline import RetryPolicy, StageKind
from conveyor.models.run import Outcome, OutcomeStatus

logger = logging.getLogger(__name__)

Probe = Callable[[str, float], int]
Wait = Callable[[threading.Event | None, float], bool]

_PROBE_ERRORS = (urllib.error.URLError, http.client.HTTPException, OSError, ValueError)


def http_probe(url: str, timeout: float) -> int:
    """GET *url* and return the response status code.

    Error statuses are returned, not raised; connection problems raise.
    """
    req = urllib.request.Request(url, method="GET", headers={"User-Agent": "conveyor-health"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status
    except urllib.error.HTTPError as exc:
        return exc.code


class CheckResult(BaseModel):
    """Result of a single health probe."""

    name: str = ""
    passed: bool = True
    message: str = ""
    severity: str = "info"  # info, warning, critical


class HealthReport(BaseModel):
    """Aggregate health report."""

    status: str = "healthy"  # healthy, degraded, unhealthy
    checks: list[CheckResult] = Field(default_factory=list)


class HealthChecker:
    """Probe environment endpoints until they report the expected status.

    Parameters
    ----------
    probe:
        ``probe(url, timeout) -> status``.  Defaults to an HTTP GET.
    wait:
        ``wait(cancel_event, seconds) -> cancelled``.  Defaults to waiting
        on the event so an abort wakes the poller immediately.
    probe_timeout:
        Per-probe network timeout in seconds.
    """

    def __init__(
        self,
        probe: Probe | None = None,
        wait: Wait | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self._probe = probe or http_probe
        self._wait = wait or wait_for_cancel
        self.probe_timeout = probe_timeout

    def verify(
        self,
        environment: Environment,
        expected_status: int = DEFAULT_EXPECTED_STATUS,
        retry_budget: RetryPolicy | None = None,
        *,
        path: str = "/",
        stage_name: str | None = None,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
        log: list[str] | None = None,
    ) -> Outcome:
        """Poll until the endpoint answers *expected_status*.

        Succeeds on the first matching response.  After
        ``retry_budget.attempts`` mismatches the outcome is ``failed`` with
        a HealthCheckTimeout message.  A set *cancel_event* stops polling
        and yields ``skipped``.
        """
        budget = retry_budget or RetryPolicy.readiness()
        name = stage_name or f"verify-{environment.name}"
        url = environment.url(path)
        probe_timeout = min(timeout, self.probe_timeout) if timeout else self.probe_timeout
        started = time.monotonic()
        lines = log if log is not None else []
        last = ""

        def outcome(status: OutcomeStatus, attempts: int, error: str = "") -> Outcome:
            return Outcome(
                stage=name,
                kind=StageKind.VERIFY.value,
                environment=environment.name,
                attempts=attempts,
                duration=time.monotonic() - started,
                status=status,
                error=error,
            )

        for attempt in range(1, budget.attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                return outcome(OutcomeStatus.SKIPPED, attempt - 1, "cancelled")

            try:
                status = self._probe(url, probe_timeout)
            except _PROBE_ERRORS as exc:
                last = f"{type(exc).__name__}: {exc}"
            else:
                last = f"status {status}"
                if status == expected_status:
                    lines.append(f"probe {attempt}: {url} -> {status}")
                    logger.info("%s healthy after %d probe(s)", environment.name, attempt)
                    return outcome(OutcomeStatus.PASSED, attempt)
            lines.append(f"probe {attempt}: {url} -> {last}")

            if attempt < budget.attempts:
                if self._wait(cancel_event, budget.delay_after(attempt)):
                    return outcome(OutcomeStatus.SKIPPED, attempt, "cancelled")

        failure = HealthCheckTimeout(
            name, budget.attempts,
            f"{url} never returned {expected_status} (last: {last})",
        )
        logger.warning("%s", failure)
        return outcome(OutcomeStatus.FAILED, budget.attempts, str(failure))

    def check(
        self,
        environment: Environment,
        *,
        path: str = "/",
        expected_status: int = DEFAULT_EXPECTED_STATUS,
        critical: bool = False,
    ) -> CheckResult:
        """Single probe, no retries."""
        url = environment.url(path)
        try:
            status = self._probe(url, self.probe_timeout)
        except _PROBE_ERRORS as exc:
            passed = False
            message = f"{url} unreachable: {exc}"
        else:
            passed = status == expected_status
            message = f"{url} returned {status}"

        if passed:
            severity = "info"
        else:
            severity = "critical" if critical else "warning"
        return CheckResult(name=environment.name, passed=passed, message=message, severity=severity)

    def check_all(
        self,
        environments: Iterable[Environment],
        *,
        critical_rank: int | None = None,
        path: str = "/",
    ) -> HealthReport:
        """Probe every environment once.

        Environments at or above *critical_rank* make the report
        ``unhealthy`` when down; others only degrade it.
        """
        checks = [
            self.check(
                env,
                path=path,
                critical=critical_rank is not None and env.rank >= critical_rank,
            )
            for env in environments
        ]

        critical_fail = any(c.severity == "critical" and not c.passed for c in checks)
        warning_fail = any(c.severity == "warning" and not c.passed for c in checks)

        if critical_fail:
            status = "unhealthy"
        elif warning_fail:
            status = "degraded"
        else:
            status = "healthy"

        return HealthReport(status=status, checks=checks)

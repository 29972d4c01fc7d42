"""Rate limiting for repeated failure reports.

The governor keeps one counter per failure domain ("store-connect",
"fetch-call", ...) and answers a single question: should *this* failure be
logged? The first failure after a success is always reported; a sustained
outage is re-reported every ``threshold`` consecutive failures, but no more
often than once per ``cooldown_seconds``. Recovery resets the counter.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from truthrelay.constants import DEFAULT_ERROR_COOLDOWN_SECONDS, DEFAULT_ERROR_THRESHOLD
from truthrelay.logging import get_logger

log = get_logger("truthrelay.relay.governor")


@dataclass(frozen=True)
class DomainPolicy:
    """Reporting policy for one failure domain.

    A ``threshold`` of zero (or less) disables periodic re-reporting: only the
    first failure of a streak is reported.
    """

    threshold: int = DEFAULT_ERROR_THRESHOLD
    cooldown_seconds: float = DEFAULT_ERROR_COOLDOWN_SECONDS


@dataclass
class DomainState:
    """Track consecutive failures for a domain."""

    consecutive_errors: int = 0
    last_reported_at: float | None = None


class ErrorRateGovernor:
    """Decide which failures get reported."""

    def __init__(
        self,
        default_policy: DomainPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the governor.

        Args:
            default_policy: Policy for domains without an explicit one.
            clock: Monotonic time source in seconds.
        """
        self._default = default_policy or DomainPolicy()
        self._policies: dict[str, DomainPolicy] = {}
        self._states: dict[str, DomainState] = {}
        self._clock = clock

    def register(self, domain: str, policy: DomainPolicy) -> None:
        """Set the policy used for ``domain``."""
        self._policies[domain] = policy

    def policy(self, domain: str) -> DomainPolicy:
        return self._policies.get(domain, self._default)

    def state(self, domain: str) -> DomainState:
        """Return the live state for ``domain`` (created on first use)."""
        if domain not in self._states:
            self._states[domain] = DomainState()
        return self._states[domain]

    def consecutive_errors(self, domain: str) -> int:
        return self.state(domain).consecutive_errors

    def record_failure(self, domain: str) -> bool:
        """Count a failure and return whether it should be reported."""
        self.state(domain).consecutive_errors += 1
        return self.should_report(domain)

    def should_report(self, domain: str) -> bool:
        """Return True when the current failure of ``domain`` should be logged.

        Reporting stamps ``last_reported_at``.
        """
        state = self.state(domain)
        policy = self.policy(domain)
        errors = state.consecutive_errors
        if errors <= 0:
            return False

        now = self._clock()
        report = errors == 1
        if not report and policy.threshold > 0 and errors % policy.threshold == 0:
            report = (
                state.last_reported_at is None
                or now - state.last_reported_at >= policy.cooldown_seconds
            )

        if report:
            state.last_reported_at = now
        return report

    def record_success(self, domain: str) -> bool:
        """Reset ``domain``; return True if it had been failing."""
        state = self._states.get(domain)
        if state is None or state.consecutive_errors == 0:
            return False
        failures = state.consecutive_errors
        state.consecutive_errors = 0
        log.info("failure_domain_recovered", domain=domain, failures=failures)
        return True


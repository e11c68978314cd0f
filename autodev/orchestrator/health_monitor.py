"""Health monitor for the orchestrator loop.

Runs at the start of each loop iteration to detect anomalies before the
next task is dequeued.

Checks:
1. Provider health: registered providers report unhealthy (warning only)
2. Provider circuit breaker: consecutive module call failures
3. State integrity: the canonical agent state is well-formed (fatal)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from autodev.modules.registry import ModuleRegistry
from autodev.orchestrator.state_manager import StateManager

logger = logging.getLogger("autodev.orchestrator.health_monitor")


class HealthCheck:
    """Result of a single health check."""

    def __init__(
        self,
        check_name: str,
        passed: bool,
        message: str = "",
        remediation: str | None = None,
        fatal: bool = False,
    ):
        self.check_name = check_name
        self.passed = passed
        self.message = message
        self.remediation = remediation
        self.fatal = fatal

    def __repr__(self) -> str:
        return f"HealthCheck({self.check_name!r}, passed={self.passed})"


class HealthMonitor:
    """Anomaly detection at the start of each loop iteration.

    Injected dependencies:
        registry: Module registry whose providers are health-checked.
        state_manager: Owner of the agent state being verified.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        state_manager: StateManager,
        failure_threshold: int = 3,
        max_cooldown_seconds: int = 300,
    ):
        self.registry = registry
        self.state_manager = state_manager
        self.failure_threshold = failure_threshold
        self.max_cooldown_seconds = max_cooldown_seconds
        self._consecutive_failures = 0
        self._circuit_breaker_open = False
        self._circuit_breaker_until: Optional[datetime] = None

    def run_checks(self) -> list[HealthCheck]:
        """Run all health checks. Returns list of check results."""
        checks = [
            self._check_provider_health(),
            self._check_circuit_breaker(),
            self._check_state_integrity(),
        ]

        failed = [c for c in checks if not c.passed]
        if failed:
            logger.warning(
                "Health checks: %d/%d failed: %s",
                len(failed), len(checks),
                ", ".join(c.check_name for c in failed),
            )
        else:
            logger.debug("Health checks: all %d passed", len(checks))

        return checks

    def _check_provider_health(self) -> HealthCheck:
        report = self.registry.health_report()
        unhealthy = sorted(cap for cap, ok in report.items() if not ok)
        if not unhealthy:
            return HealthCheck(
                "provider_health", passed=True, message=f"{len(report)} provider(s) healthy"
            )
        return HealthCheck(
            "provider_health",
            passed=False,
            message=f"Unhealthy provider(s): {', '.join(unhealthy)}",
            remediation="Check provider configuration and credentials",
        )

    def _check_circuit_breaker(self) -> HealthCheck:
        """Check if the provider circuit breaker is open."""
        if not self.is_circuit_breaker_open:
            return HealthCheck("circuit_breaker", passed=True, message="Circuit breaker closed")

        remaining = ""
        if self._circuit_breaker_until:
            delta = self._circuit_breaker_until - datetime.now(UTC)
            remaining = f" ({max(delta.seconds, 0)}s remaining)"
        return HealthCheck(
            "circuit_breaker",
            passed=False,
            message=(
                f"Circuit breaker OPEN, {self._consecutive_failures} consecutive "
                f"provider failures{remaining}"
            ),
            remediation="Wait for cooldown or check provider status",
        )

    def _check_state_integrity(self) -> HealthCheck:
        if self.state_manager.verify_integrity():
            return HealthCheck("state_integrity", passed=True, message="Agent state consistent")
        return HealthCheck(
            "state_integrity",
            passed=False,
            message=f"Agent state failed integrity check: {self.state_manager.current()}",
            remediation="Restore the latest checkpoint and recover",
            fatal=True,
        )

    def record_provider_success(self) -> None:
        """Record a successful module call, resetting the failure counter."""
        self._consecutive_failures = 0
        if self._circuit_breaker_open:
            self._circuit_breaker_open = False
            self._circuit_breaker_until = None
            logger.info("Circuit breaker closed after successful provider call")

    def record_provider_failure(self) -> None:
        """Record a failed module call. Opens the breaker at the threshold."""
        self._consecutive_failures += 1
        logger.warning("Consecutive provider failures: %d", self._consecutive_failures)

        if self._consecutive_failures >= self.failure_threshold and not self._circuit_breaker_open:
            self._circuit_breaker_open = True
            # Backoff: 30s * failure_count (capped)
            cooldown_seconds = min(30 * self._consecutive_failures, self.max_cooldown_seconds)
            self._circuit_breaker_until = datetime.now(UTC) + timedelta(seconds=cooldown_seconds)
            logger.warning("Circuit breaker OPENED, cooling down for %ds", cooldown_seconds)

    @property
    def is_circuit_breaker_open(self) -> bool:
        """Check if the circuit breaker is currently open."""
        if self._circuit_breaker_open and self._circuit_breaker_until:
            if datetime.now(UTC) > self._circuit_breaker_until:
                self._circuit_breaker_open = False
                self._consecutive_failures = 0
                self._circuit_breaker_until = None
                logger.info("Circuit breaker reset after cooldown")
                return False
        return self._circuit_breaker_open

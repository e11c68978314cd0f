"""Capability registry: uniform, bounded access to pluggable providers.

Callers name a capability and an operation; the registry resolves the
provider registered for that capability, runs the call on a bounded worker
pool, enforces the timeout and applies the retry policy.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from autodev.core.exceptions import (
    AgentCoreError,
    ConfigError,
    OperationTimeoutError,
    ProviderError,
    ProviderUnavailableError,
)
from autodev.modules.base import Capability, CapabilityProvider, ModuleRequest, ModuleResponse

logger = logging.getLogger("autodev.modules.registry")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    max_delay_seconds: float = 10.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry.max_attempts,
            backoff_base_seconds=config.retry.backoff_base_seconds,
            max_delay_seconds=config.retry.max_delay_seconds,
        )

    def delay(self, attempt: int) -> float:
        return _backoff_delay(attempt, self.backoff_base_seconds, self.max_delay_seconds)


class ModuleRegistry:
    """Holds one provider per capability behind the CapabilityProvider interface."""

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        default_timeout: float = 120.0,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_timeout = default_timeout
        self._providers: dict[Capability, CapabilityProvider] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="autodev-module"
        )
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        capability: Union[Capability, str],
        provider: CapabilityProvider,
        replace: bool = False,
    ) -> None:
        """Bind ``provider`` to ``capability``.

        Raises:
            ConfigError: If the provider does not declare the capability, or
                one is already registered and ``replace`` is False.
        """
        cap = _coerce(capability)
        if cap not in provider.capabilities:
            raise ConfigError(
                f"Provider '{provider.name}' does not declare capability '{cap.value}'"
            )
        with self._lock:
            existing = self._providers.get(cap)
            if existing is not None and not replace:
                raise ConfigError(
                    f"Capability '{cap.value}' already served by '{existing.name}'"
                )
            self._providers[cap] = provider
        logger.info("Registered provider '%s' for %s", provider.name, cap.value)

    def unregister(self, capability: Union[Capability, str]) -> Optional[CapabilityProvider]:
        with self._lock:
            return self._providers.pop(_coerce(capability), None)

    def has(self, capability: Union[Capability, str]) -> bool:
        with self._lock:
            return _coerce(capability) in self._providers

    def provider_for(self, capability: Union[Capability, str]) -> CapabilityProvider:
        """Resolve the provider for a capability.

        Raises:
            ProviderUnavailableError: If nothing is registered for it.
        """
        cap = _coerce(capability)
        with self._lock:
            provider = self._providers.get(cap)
        if provider is None:
            raise ProviderUnavailableError(cap.value)
        return provider

    def capabilities(self) -> list[Capability]:
        with self._lock:
            return list(self._providers)

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def invoke(
        self,
        capability: Union[Capability, str],
        operation: str,
        payload: Optional[dict[str, Any]] = None,
        task_id: Optional[str] = None,
        timeout: Optional[float] = None,
        idempotent: Optional[bool] = None,
    ) -> ModuleResponse:
        """Call ``operation`` on the provider for ``capability``.

        Idempotent operations are retried on retryable ProviderErrors with
        exponential backoff; non-idempotent ones fail fast. A call that
        exceeds ``timeout`` has its cancel event set and is not retried.

        Raises:
            ProviderUnavailableError: No provider registered.
            OperationTimeoutError: The call exceeded its bound.
            ProviderError: The call failed (after retries, where allowed).
        """
        cap = _coerce(capability)
        provider = self.provider_for(cap)
        timeout = timeout if timeout is not None else self.default_timeout
        if idempotent is None:
            idempotent = provider.is_idempotent(operation)
        max_attempts = self.retry_policy.max_attempts if idempotent else 1
        label = f"{cap.value}.{operation}"
        start = time.monotonic()

        for attempt in range(max_attempts):
            request = ModuleRequest(
                capability=cap,
                operation=operation,
                payload=dict(payload or {}),
                task_id=task_id,
            )
            future = self._executor.submit(provider.invoke, request)
            try:
                response = future.result(timeout=timeout)
            except FuturesTimeout:
                request.cancel_event.set()
                future.cancel()
                logger.warning("%s timed out after %.2fs (provider %s)", label, timeout, provider.name)
                raise OperationTimeoutError(label, timeout)
            except ProviderError as e:
                if e.retryable and attempt < max_attempts - 1:
                    delay = self.retry_policy.delay(attempt)
                    logger.warning(
                        "%s failed (%s). Waiting %.1fs before retry %d",
                        label, e, delay, attempt + 1,
                    )
                    self._sleep(delay)
                    continue
                raise
            except AgentCoreError:
                raise
            except Exception as e:
                if attempt < max_attempts - 1:
                    delay = self.retry_policy.delay(attempt)
                    logger.warning("%s raised %s. Waiting %.1fs", label, e, delay)
                    self._sleep(delay)
                    continue
                raise ProviderError(
                    f"{label} failed in provider '{provider.name}': {e}", retryable=True
                ) from e

            if response is None:
                response = ModuleResponse()
            elif not isinstance(response, ModuleResponse):
                raise ProviderError(
                    f"{label} returned {type(response).__name__} from provider "
                    f"'{provider.name}', expected ModuleResponse"
                )
            elif not isinstance(response.data, dict):
                raise ProviderError(
                    f"{label} returned {type(response.data).__name__} data from provider "
                    f"'{provider.name}', expected a mapping"
                )
            response.provider = provider.name
            response.attempts = attempt + 1
            response.duration_seconds = time.monotonic() - start
            logger.debug("%s ok via %s (attempts=%d)", label, provider.name, attempt + 1)
            return response

        # Unreachable: every branch of the final attempt returns or raises.
        raise ProviderError(f"{label} failed after {max_attempts} attempts")

    # ------------------------------------------------------------------
    # Health and lifecycle
    # ------------------------------------------------------------------

    def health_report(self) -> dict[str, bool]:
        with self._lock:
            providers = dict(self._providers)
        report: dict[str, bool] = {}
        for cap, provider in providers.items():
            try:
                report[cap.value] = bool(provider.health())
            except Exception as e:
                logger.warning("Health check for %s raised: %s", provider.name, e)
                report[cap.value] = False
        return report

    def close(self) -> None:
        with self._lock:
            providers = list({id(p): p for p in self._providers.values()}.values())
        for provider in providers:
            try:
                provider.close()
            except Exception as e:
                logger.warning("Closing provider %s failed: %s", provider.name, e)
        self._executor.shutdown(wait=False, cancel_futures=True)


def _coerce(capability: Union[Capability, str]) -> Capability:
    try:
        return Capability(capability)
    except ValueError as e:
        raise ConfigError(f"Unknown capability: {capability!r}") from e


def _backoff_delay(attempt: int, base_seconds: float = 0.5, max_seconds: float = 10.0) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at max_seconds."""
    return min(base_seconds * (2 ** attempt), max_seconds)

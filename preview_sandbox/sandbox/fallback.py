"""
Provider Fallback Chain - Try providers in order until one yields a preview.

Providers are attempted one at a time, never raced, so no quota is spent on
providers that would be abandoned. Transient failures (RuntimeUnavailable,
timeouts) are retried a fixed number of times before moving on; permanent
failures (BuildError, ProviderError) move on immediately.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from preview_sandbox.sandbox.errors import BuildError, ProviderError, RuntimeUnavailable
from preview_sandbox.sandbox.providers.base import PreviewProvider, ProvisionRequest, ProvisionResult

logger = logging.getLogger(__name__)


@dataclass
class ProviderAttempt:
    """One failed attempt, kept for diagnosis."""
    provider: str
    attempt: int
    error: str
    duration: float

    def describe(self) -> str:
        return f"[{self.provider} #{self.attempt}] {self.error} ({self.duration:.1f}s)"


@dataclass
class ChainOutcome:
    """The winning provider's result plus the failures that preceded it."""
    result: ProvisionResult
    provider: PreviewProvider
    attempts: List[ProviderAttempt] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.attempts)

    def log_lines(self) -> List[str]:
        lines = [f"Provider failed: {a.describe()}" for a in self.attempts]
        lines.append(f"Preview served by {self.provider.name}")
        return lines + list(self.result.logs)


class ProviderFallbackChain:
    """
    Ordered list of providers with bounded per-provider timeouts.

    Args:
        providers: Providers in preference order; the last should never fail
        default_timeout: Timeout for providers that do not set their own
        retries: Extra attempts per provider after a transient failure
    """

    def __init__(
        self,
        providers: Sequence[PreviewProvider],
        default_timeout: float = 60,
        retries: int = 1,
    ):
        if not providers:
            raise ValueError("At least one provider is required")
        self.providers = list(providers)
        self.default_timeout = default_timeout
        self.retries = retries

        if not self.providers[-1].last_resort:
            logger.warning(
                "Fallback chain ends with %s, which can fail; create requests may surface RuntimeUnavailable",
                self.providers[-1].name,
            )

    async def provision(self, request: ProvisionRequest) -> ChainOutcome:
        """
        Provision through the first provider that succeeds.

        Raises:
            RuntimeUnavailable: If every provider failed
        """
        attempts: List[ProviderAttempt] = []

        for provider in self.providers:
            result = await self._try_provider(provider, request, attempts)
            if result is not None:
                if attempts:
                    logger.info(
                        "Sandbox %s served by fallback provider %s after %d failed attempt(s)",
                        request.sandbox_id, provider.name, len(attempts),
                    )
                return ChainOutcome(result=result, provider=provider, attempts=attempts)

        summary = "; ".join(a.describe() for a in attempts)
        logger.critical("Every preview provider failed for %s: %s", request.sandbox_id, summary)
        raise RuntimeUnavailable(f"All preview providers failed: {summary}")

    async def _try_provider(
        self,
        provider: PreviewProvider,
        request: ProvisionRequest,
        attempts: List[ProviderAttempt],
    ) -> Optional[ProvisionResult]:
        timeout = provider.timeout if provider.timeout is not None else self.default_timeout

        for attempt in range(1, self.retries + 2):
            started = time.monotonic()
            try:
                return await asyncio.wait_for(provider.attempt_provision(request), timeout=timeout)
            except asyncio.TimeoutError:
                error = f"timed out after {timeout}s"
                retryable = True
            except RuntimeUnavailable as e:
                error = str(e)
                retryable = True
            except BuildError as e:
                error = f"{e}\n{e.build_log}" if e.build_log else str(e)
                retryable = False
            except ProviderError as e:
                error = str(e)
                retryable = False

            attempts.append(ProviderAttempt(provider.name, attempt, error, time.monotonic() - started))
            logger.warning(
                "Provider %s attempt %d failed for %s: %s",
                provider.name, attempt, request.sandbox_id, error.splitlines()[0] if error else "",
            )
            if not retryable:
                break

        return None

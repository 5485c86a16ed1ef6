"""
Base Reasoning Provider

Defines the abstract interface for reasoning backends.
Implementations handle transport; this base class handles retries and timeouts.

Design decisions:
- Async-first: submit() is a coroutine
- Provider-agnostic: the engine only sees ReasoningRequest / ProviderResponse
- Retry logic built into the base class with exponential backoff
- Only transient failures are retried; malformed responses raise immediately
"""

import asyncio
from abc import ABC, abstractmethod

from tasktree.core.exceptions import ProviderUnavailableError
from tasktree.core.types import ProviderResponse, ReasoningRequest
from tasktree.observability.logging import get_logger

logger = get_logger("tasktree.reasoning")


class BaseReasoningProvider(ABC):
    """
    Abstract base class for reasoning providers.

    All provider interactions go through submit(), enabling:
    - Provider switching without engine changes
    - Consistent error handling
    - Built-in retry logic
    """

    def __init__(
        self,
        *,
        max_retries: int = 0,
        retry_delay: float = 1.0,
        timeout: float | None = None,
    ):
        self._retry_count = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier."""

    @abstractmethod
    async def _do_submit(self, request: ReasoningRequest) -> ProviderResponse:
        """
        Provider-specific implementation of a turn.

        Called by submit() inside the retry loop.
        Implementations should NOT handle retries.
        """

    async def submit(self, request: ReasoningRequest) -> ProviderResponse:
        """
        Submit one turn.

        Retries ProviderUnavailableError and timeouts with exponential
        backoff, honouring retry_after when the provider supplies it.

        Raises:
            ProviderUnavailableError: still unavailable after all retries
            ProviderResponseError: malformed response (not retried)
        """
        last_error: ProviderUnavailableError | None = None

        for attempt in range(self._retry_count + 1):
            try:
                if self._timeout is None:
                    return await self._do_submit(request)
                return await asyncio.wait_for(self._do_submit(request), timeout=self._timeout)
            except TimeoutError:
                last_error = ProviderUnavailableError(
                    f"Provider timed out after {self._timeout}s",
                    context={"attempt": attempt + 1},
                )
                delay = self._retry_delay * (2**attempt)
            except ProviderUnavailableError as e:
                last_error = e
                delay = e.retry_after or (self._retry_delay * (2**attempt))

            if attempt < self._retry_count:
                logger.warning(
                    "Provider unavailable; retrying",
                    provider=self.provider_name,
                    attempt=attempt + 1,
                    delay=delay,
                )
                await asyncio.sleep(delay)

        if last_error is not None:
            raise last_error
        raise ProviderUnavailableError("Provider request failed after all retries")

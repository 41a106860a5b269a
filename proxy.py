"""Base service client: timeout, error classification and fallback policy."""
import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx

from config import ServiceDescriptor
from errors import AiServerError

logger = logging.getLogger("story-relay.proxy")

T = TypeVar("T")


class Policy(str, Enum):
    """What an operation does when its downstream call fails."""

    FAIL_FAST = "fail_fast"
    FALLBACK = "fallback"


class EmptyResponseError(Exception):
    """Downstream answered, but with no usable body."""


class ServiceClient:
    """HTTP client for one downstream AI server.

    Subclasses declare a ``policies`` table mapping each operation to
    ``Policy.FAIL_FAST`` or ``Policy.FALLBACK`` and route every downstream
    exchange through :meth:`call`. Each call is a single attempt bounded by the
    operation's timeout from the descriptor.
    """

    policies: Dict[str, Policy] = {}

    def __init__(self, descriptor: ServiceDescriptor, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.descriptor = descriptor
        self._client = httpx.AsyncClient(
            base_url=descriptor.base_url,
            timeout=httpx.Timeout(None, connect=descriptor.connect_timeout),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def _send(self, method: str, path: str, payload: Any) -> Any:
        response = await self._client.request(method, path, json=payload)
        response.raise_for_status()
        if not response.content or not response.content.strip():
            raise EmptyResponseError(f"Empty response body from {path}")
        body = response.json()
        if body is None:
            raise EmptyResponseError(f"Null response body from {path}")
        return body

    async def call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        translate: Callable[[Any], T],
        payload: Any = None,
        fallback: Optional[Callable[[], T]] = None,
        action: str = "Request",
    ) -> T:
        """Issue one downstream call and translate its answer.

        Args:
            operation: Operation name; selects the timeout and the policy
            method: HTTP method
            path: Path relative to the backend's base address
            translate: Turns the decoded JSON body into the relay response
            payload: JSON body to send
            fallback: Builds the degraded value for FALLBACK operations
            action: Human readable name used in error messages

        Returns:
            The translated response, or the fallback value on failure for
            FALLBACK operations.

        Raises:
            AiServerError: On failure of a FAIL_FAST operation.
        """
        policy = self.policies[operation]
        if policy is Policy.FALLBACK and fallback is None:
            raise ValueError(f"{self.name}.{operation} is a fallback operation but no fallback was given")

        timeout = self.descriptor.timeout_for(operation)
        try:
            body = await asyncio.wait_for(self._send(method, path, payload), timeout=timeout)
            result = translate(body)
        except asyncio.TimeoutError as e:
            cause = f"timed out after {timeout:g} seconds"
            return self._on_failure(operation, policy, action, cause, e, fallback)
        except (httpx.HTTPError, EmptyResponseError, ValueError, TypeError) as e:
            cause = str(e) or type(e).__name__
            return self._on_failure(operation, policy, action, cause, e, fallback)

        logger.info(f"{self.name} {operation} completed successfully")
        return result

    def _on_failure(self, operation, policy, action, cause, error, fallback):
        if policy is Policy.FALLBACK:
            logger.warning(f"{self.name} {operation} failed, returning fallback: {cause}")
            return fallback()
        logger.error(f"{self.name} server error during {operation}: {cause}")
        raise AiServerError(self.name, f"{action} failed: {cause}", error) from error

    async def probe(self) -> bool:
        """Lightweight liveness check. Never raises."""
        try:
            response = await asyncio.wait_for(
                self._client.get(self.descriptor.probe_path),
                timeout=self.descriptor.probe_timeout,
            )
            response.raise_for_status()
            return self.is_healthy(response)
        except Exception as e:
            logger.warning(f"{self.name} AI health check failed: {e!r}")
            return False

    def is_healthy(self, response: httpx.Response) -> bool:
        """Decide from a successful probe response whether the backend is up."""
        return bool(response.content)

    async def close(self):
        if not self._client.is_closed:
            await self._client.aclose()


def probe_status(response: httpx.Response) -> Optional[str]:
    """Read the ``status`` field of a JSON probe answer."""
    body = response.json()
    if not isinstance(body, dict) or body.get("status") is None:
        return None
    return str(body["status"])

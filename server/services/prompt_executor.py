"""Prompt executor collaborators used by the task scheduler.

The scheduler only needs ``execute(prompt) -> text``. In production that is
the conversational agent, reached over its HTTP chat endpoint.
"""

from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

import httpx

from core.exceptions import ExecutionError
from core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class PromptExecutor(Protocol):
    """Turns a prompt into a response. Raises on failure."""

    async def execute(self, prompt: str) -> str:
        ...


class CallablePromptExecutor:
    """Adapt a plain ``async def fn(prompt) -> str`` to the executor protocol."""

    def __init__(self, func: Callable[[str], Awaitable[str]]):
        self._func = func

    async def execute(self, prompt: str) -> str:
        return await self._func(prompt)


def as_prompt_executor(executor) -> PromptExecutor:
    if isinstance(executor, PromptExecutor):
        return executor
    if callable(executor):
        return CallablePromptExecutor(executor)
    raise TypeError(f"Not a prompt executor: {executor!r}")


class HttpPromptExecutor:
    """Send the prompt to the agent's ``POST /api/chat`` endpoint."""

    def __init__(self, base_url: str, timeout: float = 300.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def execute(self, prompt: str) -> str:
        url = f"{self.base_url}/api/chat"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json={"message": prompt})
        except httpx.HTTPError as e:
            logger.error("Prompt executor request failed", url=url, error=str(e))
            raise ExecutionError(f"Agent request failed: {e}") from e

        if response.status_code >= 400:
            detail = response.text[:500]
            logger.error("Prompt executor returned error", url=url, status=response.status_code)
            raise ExecutionError(f"Agent returned HTTP {response.status_code}: {detail}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ExecutionError("Agent returned a non-JSON response") from e

        if isinstance(payload, dict) and payload.get("error"):
            raise ExecutionError(str(payload["error"]))

        text = payload.get("response") if isinstance(payload, dict) else None
        return text if isinstance(text, str) else ""

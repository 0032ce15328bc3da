"""Model caller interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

import httpx

from agentloop.errors import ProviderError
from agentloop.models import HistoryEvent
from agentloop.tools.base import Tool

if TYPE_CHECKING:
    from agentloop.agent_runtime import AgentSpec

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ModelCaller(ABC):
    """Turns history into one provider request and the reply into new events."""

    @abstractmethod
    async def call_model(
        self,
        spec: AgentSpec,
        tools: list[Tool[Any]],
        history: list[HistoryEvent],
    ) -> list[HistoryEvent]:
        """Run a single model round trip."""


def raise_for_provider_status(response: httpx.Response, model: str | None = None) -> None:
    """Raise ``ProviderError`` for a non-2xx response, keeping the API's message."""

    if response.is_success:
        return
    message = response.text
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = str(body["error"].get("message") or message)
    raise ProviderError(response.status_code, message, model=model)


async def retry_transient(
    call: Callable[[str], Awaitable[T]],
    model: str,
    fallback_model: str | None,
    attempts: int,
    interval_seconds: float,
    sleep: Callable[[float], Awaitable[None]],
) -> T:
    """Call ``call(model)``, retrying 5xx errors at a fixed interval.

    After ``attempts`` transient failures the call is tried once more on
    ``fallback_model`` (when given) before the last error is re-raised.
    """

    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await call(model)
        except ProviderError as exc:
            if not exc.is_transient:
                raise
            LOGGER.warning(
                "Model %s failed with %d (attempt %d/%d)", model, exc.status_code, attempt, attempts
            )
            if attempt == attempts and fallback_model is None:
                raise
            if attempt < attempts:
                await sleep(interval_seconds)
    LOGGER.warning("Retrying once on fallback model %s", fallback_model)
    return await call(fallback_model)

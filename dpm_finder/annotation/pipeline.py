"""
Annotation pipeline: metric + collector config -> streamed explanation.

The stream hands out the cumulative text after every delta, so a consumer
only ever needs to replace what it shows with the latest value.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Optional

from dpm_finder.annotation.completion_client import CompletionClient
from dpm_finder.annotation.prompts import AnnotationRequest, accumulate
from dpm_finder.errors import StreamError
from dpm_finder.fleet.resolver import CollectorConfig

logger = logging.getLogger(__name__)


class AnnotationStatus(Enum):
    """Lifecycle of one annotation."""
    IDLE = "idle"
    LOADING = "loading"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (AnnotationStatus.DONE, AnnotationStatus.ERRORED)


_ORDER = {
    AnnotationStatus.IDLE: 0,
    AnnotationStatus.LOADING: 1,
    AnnotationStatus.STREAMING: 2,
    AnnotationStatus.DONE: 3,
    AnnotationStatus.ERRORED: 3,
}


@dataclass(frozen=True)
class AnnotationState:
    """
    Accumulated text and status. Transitions only move forward; a new
    request starts again from a fresh ``AnnotationState()``.
    """

    text: str = ""
    status: AnnotationStatus = AnnotationStatus.IDLE
    error: Optional[str] = None

    def _advance(self, status: AnnotationStatus, **changes) -> "AnnotationState":
        if self.status.terminal or _ORDER[status] < _ORDER[self.status]:
            raise ValueError(f"Invalid transition {self.status.value} -> {status.value}")
        return replace(self, status=status, **changes)

    def started(self) -> "AnnotationState":
        return self._advance(AnnotationStatus.LOADING)

    def with_delta(self, delta: str) -> "AnnotationState":
        return self._advance(AnnotationStatus.STREAMING, text=accumulate(self.text, delta))

    def finished(self) -> "AnnotationState":
        return self._advance(AnnotationStatus.DONE)

    def failed(self, message: str) -> "AnnotationState":
        return self._advance(AnnotationStatus.ERRORED, error=message)


class AnnotationStream:
    """
    Handle for one in-flight annotation.

    Iterate it (once) to receive cumulative text. ``close()`` abandons the
    stream: iteration stops quietly and nothing further is published.

    Example:
        stream = pipeline.analyze("up", config)
        async for text in stream:
            show(text)
        stream.state.status  # DONE or ERRORED
    """

    def __init__(
        self,
        request: AnnotationRequest,
        client: CompletionClient,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ):
        self.request = request
        self._client = client
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._state = AnnotationState()
        self._closed = False
        self._consumed = False

    @property
    def state(self) -> AnnotationState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop consuming; safe to call at any time, any number of times."""
        if not self._closed:
            logger.debug(f"Annotation stream for {self.request.metric} closed")
        self._closed = True

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("AnnotationStream can only be consumed once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        if self._closed:
            return

        self._state = self._state.started()
        deltas = self._client.stream_prompt(
            self.request.prompt_text,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )

        try:
            async for delta in deltas:
                if self._closed:
                    return
                if not delta:
                    continue
                self._state = self._state.with_delta(delta)
                yield self._state.text

        except asyncio.CancelledError:
            raise

        except Exception as e:
            if self._closed:
                logger.debug(f"Ignoring error from abandoned stream: {e}")
                return
            message = f"Error communicating with LLM: {e}"
            self._state = self._state.failed(message)
            logger.error(
                f"Annotation stream for {self.request.metric} failed after "
                f"{len(self._state.text)} chars: {e}"
            )
            raise StreamError(message, partial_text=self._state.text) from e

        finally:
            aclose = getattr(deltas, "aclose", None)
            if aclose is not None:
                await aclose()

        if not self._closed:
            self._state = self._state.finished()
            logger.info(
                f"Annotation for {self.request.metric} complete ({len(self._state.text)} chars)"
            )


class AnnotationPipeline:
    """
    Builds annotation requests and opens streams for them.
    """

    def __init__(
        self,
        client: CompletionClient,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ):
        self.client = client
        self.temperature = temperature
        self.max_tokens = max_tokens

    def analyze(self, metric: str, config: CollectorConfig) -> AnnotationStream:
        """Prepare a stream explaining ``metric`` under ``config``. Nothing is sent until iterated."""
        request = AnnotationRequest.build(metric, config)
        logger.debug(f"Annotation request for {metric}: {len(request.prompt_text)} char prompt")
        return AnnotationStream(
            request,
            self.client,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )

    async def close(self) -> None:
        await self.client.close()

"""Streaming completion client for the OpenAI-compatible endpoint.

Turns a system prompt and a user prompt into an async iterator of text
fragments. The iterator is one-shot: closing it (or cancelling the task
consuming it) closes the upstream HTTP response.
"""
import asyncio
import logging
from typing import AsyncIterator, Optional

from openai import APIError, AsyncOpenAI

from carechat.config import settings
from carechat.errors import UpstreamError

logger = logging.getLogger(__name__)


def build_client() -> AsyncOpenAI:
    """Create the async OpenAI client from settings."""
    api_key = settings.OPENAI_API_KEY
    if not api_key:
        logger.warning("OPENAI_API_KEY is not set, completions will fail upstream")
        api_key = "dummy_key"

    return AsyncOpenAI(
        api_key=api_key,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.OPENAI_TIMEOUT,
        max_retries=0,
    )


class CompletionBridge:
    """Wraps chat.completions streaming and normalizes its failures."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        idle_timeout: Optional[float] = None,
    ):
        self._client = client
        self.model = model or settings.OPENAI_MODEL
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.STREAM_IDLE_TIMEOUT

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = build_client()
        return self._client

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """
        Stream completion fragments in upstream order.

        Chunks without content are skipped. Nothing is accumulated here.

        Raises:
            UpstreamError: on API errors, network errors, or when no chunk
                arrives within idle_timeout seconds
        """
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    stream=True,
                ),
                timeout=self.idle_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError("Timed out opening completion stream") from e
        except APIError as e:
            raise UpstreamError(f"Completion request failed: {e}") from e
        except Exception as e:
            raise UpstreamError(f"Completion request failed: {type(e).__name__}") from e

        chunks = response.__aiter__()
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.idle_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise UpstreamError(
                        f"No completion data for {self.idle_timeout}s"
                    ) from e
                except APIError as e:
                    raise UpstreamError(f"Completion stream failed: {e}") from e
                except Exception as e:
                    raise UpstreamError(f"Completion stream failed: {type(e).__name__}") from e

                content = self._chunk_content(chunk)
                if content:
                    yield content
        finally:
            await self._close(response)

    @staticmethod
    def _chunk_content(chunk) -> Optional[str]:
        choices = getattr(chunk, "choices", None)
        if not choices:
            return None
        delta = getattr(choices[0], "delta", None)
        return getattr(delta, "content", None)

    @staticmethod
    async def _close(response) -> None:
        close = getattr(response, "close", None)
        if close is None:
            return
        try:
            result = close()
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.debug("Error closing completion stream", exc_info=True)

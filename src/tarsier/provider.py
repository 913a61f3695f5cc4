import asyncio
import logging
import os

from openai import AsyncOpenAI

from tarsier.config import ReconstructorConfig
from tarsier.reconstructor import EventSink, StreamMissingError, StreamReconstructor, StreamStats

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider:
    """Runs a reconstructor over an OpenAI-compatible streaming completion.

    The request itself (model, messages, tools, sampling options) is
    built by the caller and passed through unchanged; only
    ``stream=True`` is forced.  Each ``ChatCompletionChunk`` is fed to
    a fresh :class:`StreamReconstructor`.

    Args:
        base_url: API root, e.g. ``https://openrouter.ai/api/v1``.
            Defaults to the OpenAI endpoint.
        api_key: API key; read from ``OPENAI_API_KEY`` when omitted.
        config: Reconstructor settings used for every stream.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        config: ReconstructorConfig | None = None,
    ):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.client = AsyncOpenAI(
            base_url=base_url,
            api_key=api_key,
            max_retries=5,
            timeout=600.0,
        )
        self.config = config or ReconstructorConfig()

    async def stream(
        self,
        sink: EventSink,
        cancel: asyncio.Event | None = None,
        **request,
    ) -> StreamStats:
        """Create a streaming chat completion and reconstruct its events.

        Raises:
            StreamMissingError: If the client returned no stream.
        """
        request.pop("stream", None)
        response = await self.client.chat.completions.create(
            stream=True, **request,
        )
        if response is None:
            raise StreamMissingError("chat completion returned no stream")
        reconstructor = StreamReconstructor(sink=sink, config=self.config)
        try:
            stats = await reconstructor.run(
                response, cancel=cancel, model=request.get("model"),
            )
        finally:
            # Releases the HTTP connection, also after cancellation.
            close = getattr(response, "close", None)
            if close is not None:
                await close()
        logger.info(
            f"Reconstructed stream for {request.get('model')}: "
            f"{stats.text_events} text, {stats.thinking_events} thinking, "
            f"{stats.tool_calls} tool call events"
        )
        return stats

from typing import AsyncIterator, Optional

import structlog

from transcriber.core.exceptions import StreamFailure
from transcriber.domain.models import GenerationConfig, RequestPayload
from transcriber.domain.ports import TranscriptionClientPort

logger = structlog.get_logger(__name__)


class FragmentStream:
    """
    Lazy, finite, single-use sequence of text fragments for one request.

    Nothing is sent until iteration starts. Empty increments are dropped,
    exhaustion means the transcription is complete, and any failure from
    the underlying binding is raised as StreamFailure.
    """

    def __init__(self, source: AsyncIterator[str]):
        self._source = source
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("FragmentStream cannot be restarted")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        try:
            async for fragment in self._source:
                if fragment:
                    yield fragment
        except StreamFailure:
            raise
        except Exception as e:
            raise StreamFailure(f"{type(e).__name__}: {e}") from e
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()


class StreamingRequestAdapter:
    """Opens one streaming recognition call per payload, with fixed generation settings."""

    def __init__(
        self,
        client: TranscriptionClientPort,
        generation_config: Optional[GenerationConfig] = None,
    ):
        self.client = client
        self.generation_config = generation_config or GenerationConfig()

    def start(self, payload: RequestPayload, instructions: str) -> FragmentStream:
        logger.debug(
            "stream.start",
            mime_type=payload.mime_type,
            size_bytes=payload.size_bytes,
        )
        return FragmentStream(
            self.client.generate_stream(instructions, payload, self.generation_config)
        )

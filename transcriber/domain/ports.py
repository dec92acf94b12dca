from typing import AsyncIterator, Protocol, runtime_checkable

from transcriber.domain.models import GenerationConfig, RequestPayload


@runtime_checkable
class TranscriptionClientPort(Protocol):
    """Port defining the contract for the external streaming recognition service."""

    def generate_stream(
        self,
        instructions: str,
        payload: RequestPayload,
        generation_config: GenerationConfig,
    ) -> AsyncIterator[str]:
        """Return the generated text as an async sequence of increments.

        Errors are raised as StreamFailure, either when the stream is opened
        or while it is being consumed.
        """
        ...

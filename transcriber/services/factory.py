from functools import lru_cache

from fastapi import Depends

from transcriber.core.config import settings
from transcriber.infrastructure.gemini_client import get_transcription_client
from .intake import IntakeService
from .orchestrator import BatchOrchestrator
from .result_store import ResultStore
from .streaming import StreamingRequestAdapter


# The store and orchestrator live for the whole process: results are only
# kept in memory and batch tasks must outlive the request that started them.
@lru_cache
def get_result_store() -> ResultStore:
    return ResultStore()


@lru_cache
def get_orchestrator() -> BatchOrchestrator:
    adapter = StreamingRequestAdapter(get_transcription_client(), settings.GENERATION)
    return BatchOrchestrator(
        adapter,
        get_result_store(),
        max_concurrency=settings.MAX_CONCURRENCY,
        mode=settings.CONCURRENCY_MODE,
        instructions=settings.TRANSCRIPTION_PROMPT,
    )


def get_intake_service(
    store: ResultStore = Depends(get_result_store),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
) -> IntakeService:
    return IntakeService(store, orchestrator)

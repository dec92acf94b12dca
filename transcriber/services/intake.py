import asyncio
import re
from typing import List, Optional, Sequence, Union
from urllib.parse import urlparse

import httpx
import structlog

from transcriber.core.config import settings
from transcriber.core.exceptions import FetchFailed
from transcriber.domain.models import ImageInput
from transcriber.services.orchestrator import BatchHandle, BatchOrchestrator
from transcriber.services.result_store import ResultStore

logger = structlog.get_logger(__name__)

DropEntry = Union[ImageInput, str]


class DropResult:
    def __init__(self, handle: BatchHandle, skipped: List[str]):
        self.handle = handle
        self.skipped = skipped


class IntakeService:
    """
    Collects image bytes from uploads, drops and URLs and hands them to the
    orchestrator with the next free index range.

    The store count is read and the batch submitted without yielding to the
    event loop in between, so two gateways firing at once can never claim
    the same start index.
    """

    def __init__(
        self,
        store: ResultStore,
        orchestrator: BatchOrchestrator,
        fetch_timeout: float = settings.FETCH_TIMEOUT,
        drop_url_pattern: str = settings.DROP_URL_PATTERN,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.fetch_timeout = fetch_timeout
        self.drop_url_pattern = re.compile(drop_url_pattern, re.IGNORECASE)

    def submit_files(self, inputs: Sequence[ImageInput]) -> BatchHandle:
        return self.orchestrator.submit(list(inputs), self.store.count)

    async def fetch_image(self, url: str) -> ImageInput:
        """Downloads ``url`` and returns its bytes tagged with the response Content-Type."""
        log = logger.bind(url=url)
        try:
            async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log.warning("intake.fetch.bad_status", status_code=e.response.status_code)
            raise FetchFailed(url, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            log.warning("intake.fetch.failed", error=str(e))
            raise FetchFailed(url, str(e) or type(e).__name__) from e

        log.info("intake.fetch.finished", size_bytes=len(response.content))
        return ImageInput(
            content=response.content,
            media_type=response.headers.get("content-type", ""),
            source=url,
        )

    async def submit_url(self, url: str) -> BatchHandle:
        image = await self.fetch_image(url)
        return self.submit_files([image])

    def is_droppable_url(self, url: str) -> bool:
        path = urlparse(url.strip()).path
        return bool(self.drop_url_pattern.search(path))

    async def submit_drop(self, entries: Sequence[DropEntry]) -> DropResult:
        """
        Submits a mixed drop of files and URL strings as one batch, in drop order.

        URL strings that do not look like image links, or whose download
        fails, are left out and reported in ``DropResult.skipped``.
        """
        skipped: List[str] = []

        async def _resolve(entry: DropEntry) -> Optional[ImageInput]:
            if isinstance(entry, ImageInput):
                return entry
            if not self.is_droppable_url(entry):
                skipped.append(f"{entry}: not an image link")
                return None
            try:
                return await self.fetch_image(entry.strip())
            except FetchFailed as e:
                skipped.append(f"{entry}: {e.reason}")
                return None

        resolved = await asyncio.gather(*(_resolve(entry) for entry in entries))
        inputs = [image for image in resolved if image is not None]
        logger.info("intake.drop.resolved", submitted=len(inputs), skipped=len(skipped))
        return DropResult(self.submit_files(inputs), skipped)

import asyncio
import time
import uuid
from collections import deque
from typing import Callable, Deque, Optional, Sequence, Set

import structlog

from transcriber.core.config import settings
from transcriber.core.exceptions import InvalidInput, StreamFailure
from transcriber.domain.models import ImageInput, Item, RequestPayload
from transcriber.services.encoder import encode
from transcriber.services.result_store import ResultStore
from transcriber.services.streaming import StreamingRequestAdapter

logger = structlog.get_logger(__name__)

CONCURRENCY_MODES = ("window", "sliding")


class BatchHandle:
    """Tracks one submitted batch: its contiguous index range and its background task."""

    def __init__(self, batch_id: str, indices: range, task: Optional[asyncio.Task] = None):
        self.batch_id = batch_id
        self.indices = indices
        self._task = task

    @property
    def start_index(self) -> int:
        return self.indices.start

    @property
    def count(self) -> int:
        return len(self.indices)

    def done(self) -> bool:
        return self._task is None or self._task.done()

    async def wait(self) -> None:
        """Blocks until every item in the batch is terminal."""
        if self._task is not None:
            await asyncio.shield(self._task)


class BatchOrchestrator:
    """
    Drives a batch of items through encode -> stream -> result store.

    Items run in concurrency windows of ``max_concurrency``. In ``window``
    mode each window is joined before the next one starts; ``sliding`` mode
    refills a freed place right away. Either way a batch never has more
    than ``max_concurrency`` streams open. The limit is per batch: two
    batches submitted back to back run side by side, each under its own
    limit. A failing item only ever fails its own slot.

    Items are popped off the batch queue as they are scheduled, so an
    item's image bytes are held only by its own coroutine and are released
    once its slot is terminal.
    """

    def __init__(
        self,
        adapter: StreamingRequestAdapter,
        store: ResultStore,
        max_concurrency: int = settings.MAX_CONCURRENCY,
        mode: str = settings.CONCURRENCY_MODE,
        instructions: str = settings.TRANSCRIPTION_PROMPT,
        encoder: Callable[[bytes, str], RequestPayload] = encode,
    ):
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        if mode not in CONCURRENCY_MODES:
            raise ValueError(f"Invalid concurrency mode: {mode}")
        self.adapter = adapter
        self.store = store
        self.max_concurrency = max_concurrency
        self.mode = mode
        self.instructions = instructions
        self.encoder = encoder
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, items: Sequence[ImageInput], start_index: int) -> BatchHandle:
        """
        Reserves result slots for ``items`` and starts processing them.

        Slots for the whole batch exist by the time this returns; their
        content fills in asynchronously. Must be called from a running
        event loop.

        Raises:
            PreconditionViolation: if ``start_index`` is not the store's
                current item count.
        """
        loop = asyncio.get_running_loop() if items else None
        indices = self.store.allocate(len(items), start_index=start_index)
        batch_id = f"batch_{uuid.uuid4().hex[:12]}"
        log = logger.bind(batch_id=batch_id)

        if not items:
            log.info("batch.empty", start_index=start_index)
            return BatchHandle(batch_id, indices)

        work = deque(
            Item(index=index, content=image.content, media_type=image.media_type, source=image.source)
            for index, image in zip(indices, items)
        )
        log.info(
            "batch.submitted",
            start_index=indices.start,
            count=len(work),
            mode=self.mode,
            max_concurrency=self.max_concurrency,
        )
        task = loop.create_task(self._run_batch(work, log))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return BatchHandle(batch_id, indices, task)

    async def run(self, items: Sequence[ImageInput], start_index: int) -> BatchHandle:
        handle = self.submit(items, start_index)
        await handle.wait()
        return handle

    async def _run_batch(self, items: Deque[Item], log: structlog.stdlib.BoundLogger) -> None:
        start_time = time.perf_counter()
        count = len(items)
        if self.mode == "window":
            await self._run_windows(items, log)
        else:
            await self._run_sliding(items, log)
        duration_ms = round((time.perf_counter() - start_time) * 1000)
        log.info("batch.finished", duration_ms=duration_ms, count=count)

    async def _run_windows(self, items: Deque[Item], log: structlog.stdlib.BoundLogger) -> None:
        window = 0
        while items:
            size = min(self.max_concurrency, len(items))
            log.info("window.start", window=window, indices=[items[i].index for i in range(size)])
            await asyncio.gather(*(self._process_item(items.popleft(), log) for _ in range(size)))
            log.info("window.finished", window=window)
            window += 1

    async def _run_sliding(self, items: Deque[Item], log: structlog.stdlib.BoundLogger) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _bounded(item: Item) -> None:
            async with semaphore:
                await self._process_item(item, log)

        await asyncio.gather(*(_bounded(items.popleft()) for _ in range(len(items))))

    async def _process_item(self, item: Item, log: structlog.stdlib.BoundLogger) -> None:
        """Runs one item to a terminal slot state. Never raises."""
        index = item.index
        log = log.bind(index=index, source=item.source)
        try:
            payload = self.encoder(item.content, item.media_type)
        except InvalidInput as e:
            log.warning("item.invalid_input", error=str(e))
            self.store.mark_failed(index, f"InvalidInput: {e}")
            return

        except Exception as e:
            log.error("item.encode.unhandled_exception", error=str(e), exc_info=True)
            self.store.mark_failed(index, f"Unexpected error: {e}")
            return

        fragments = 0
        try:
            async for fragment in self.adapter.start(payload, self.instructions):
                self.store.append_fragment(index, fragment)
                fragments += 1
        except StreamFailure as e:
            log.error("item.stream.failed", reason=e.reason, status_code=e.status_code, fragments=fragments)
            self.store.mark_failed(index, e.reason)
            return
        except Exception as e:
            log.error("item.unhandled_exception", error=str(e), exc_info=True)
            self.store.mark_failed(index, f"Unexpected error: {e}")
            return

        self.store.mark_done(index)
        log.info("item.done", fragments=fragments)

from typing import List, Optional

import structlog
from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)

from transcriber.core.exceptions import FetchFailed, SlotNotFound
from transcriber.core.limiter import limiter
from transcriber.domain.models import (
    BatchReceipt,
    DropReceipt,
    ImageInput,
    ResultSlot,
    UrlSubmission,
)
from transcriber.services.factory import get_intake_service, get_result_store
from transcriber.services.intake import IntakeService
from transcriber.services.orchestrator import BatchHandle
from transcriber.services.result_store import ResultStore

router = APIRouter()
logger = structlog.get_logger(__name__)

SLOT_NOT_FOUND_CLOSE_CODE = 4404


def _receipt(handle: BatchHandle) -> BatchReceipt:
    return BatchReceipt(
        batch_id=handle.batch_id,
        start_index=handle.start_index,
        count=handle.count,
        indices=list(handle.indices),
    )


async def _read_uploads(files: List[UploadFile]) -> List[ImageInput]:
    return [
        ImageInput(
            content=await upload.read(),
            media_type=upload.content_type or "",
            source=upload.filename,
        )
        for upload in files
    ]


@router.post("/batches/files", response_model=BatchReceipt)
@limiter.limit("30/minute")
async def submit_files(
    request: Request,
    files: List[UploadFile] = File(..., description="Images to transcribe"),
    intake: IntakeService = Depends(get_intake_service),
):
    """
    Queues uploaded images for transcription.

    Returns as soon as a result slot exists for every file; poll
    ``/results/{index}`` or watch the websocket for the text.
    """
    inputs = await _read_uploads(files)
    handle = intake.submit_files(inputs)
    logger.info("api.batch.files", batch_id=handle.batch_id, count=handle.count)
    return _receipt(handle)


@router.post("/batches/url", response_model=BatchReceipt)
@limiter.limit("20/minute")
async def submit_url(
    request: Request,
    body: UrlSubmission,
    intake: IntakeService = Depends(get_intake_service),
):
    """Fetches one image by URL and queues it for transcription."""
    try:
        handle = await intake.submit_url(body.url)
    except FetchFailed as e:
        logger.warning("api.batch.url.fetch_failed", url=e.url, reason=e.reason)
        raise HTTPException(status_code=502, detail=str(e))
    return _receipt(handle)


@router.post("/batches/drop", response_model=DropReceipt)
@limiter.limit("20/minute")
async def submit_drop(
    request: Request,
    files: Optional[List[UploadFile]] = File(None),
    urls: List[str] = Form([]),
    intake: IntakeService = Depends(get_intake_service),
):
    """Queues a drag-and-drop payload: dropped files first, then dropped image links."""
    entries = await _read_uploads(files or []) + list(urls)
    result = await intake.submit_drop(entries)
    receipt = _receipt(result.handle)
    return DropReceipt(**receipt.model_dump(), skipped=result.skipped)


@router.get("/results", response_model=List[ResultSlot])
async def list_results(store: ResultStore = Depends(get_result_store)):
    return store.snapshot()


@router.get("/results/{index}", response_model=ResultSlot)
async def get_result(index: int, store: ResultStore = Depends(get_result_store)):
    try:
        return store.get(index)
    except SlotNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.websocket("/ws/results/{index}")
async def watch_result(
    websocket: WebSocket,
    index: int,
    store: ResultStore = Depends(get_result_store),
):
    """Pushes every change to one slot until it reaches done or failed."""
    await websocket.accept()
    try:
        async for snapshot in store.watch(index):
            await websocket.send_json(snapshot.model_dump(mode="json"))
    except SlotNotFound as e:
        await websocket.close(code=SLOT_NOT_FOUND_CLOSE_CODE, reason=str(e))
        return
    except WebSocketDisconnect:
        logger.info("api.ws.disconnected", index=index)
        return
    await websocket.close()

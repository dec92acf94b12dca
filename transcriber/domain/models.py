from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenerationConfig(BaseModel):
    """Fixed sampling parameters passed through to the recognition model."""
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = 40
    max_output_tokens: int = 8192

    def to_wire(self) -> dict:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "topK": self.top_k,
            "maxOutputTokens": self.max_output_tokens,
        }


class ImageInput(BaseModel):
    """Raw image bytes as collected by an intake gateway."""
    content: bytes
    media_type: str = ""
    source: Optional[str] = Field(None, description="File name or URL the bytes came from.")


class Item(BaseModel):
    """One unit of work, pinned to its index in the global result sequence."""
    model_config = ConfigDict(frozen=True)

    index: int
    content: bytes
    media_type: str
    source: Optional[str] = None


class RequestPayload(BaseModel):
    """Inline image data in the shape the recognition service expects."""
    model_config = ConfigDict(frozen=True)

    data: str  # b64 encoded
    mime_type: str
    size_bytes: int

    def to_wire(self) -> dict:
        return {"inline_data": {"mime_type": self.mime_type, "data": self.data}}


class SlotStatus(str, Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    DONE = "done"
    FAILED = "failed"


class ResultSlot(BaseModel):
    """Read-only snapshot of one item's transcription."""
    model_config = ConfigDict(frozen=True)

    index: int
    status: SlotStatus = SlotStatus.EMPTY
    text: str = ""
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SlotStatus.DONE, SlotStatus.FAILED)


class BatchReceipt(BaseModel):
    batch_id: str
    start_index: int
    count: int
    indices: List[int]


class DropReceipt(BatchReceipt):
    skipped: List[str] = Field([], description="Dropped entries that were not submitted, with reasons.")


class UrlSubmission(BaseModel):
    url: str


class RequestContext(BaseModel):
    correlation_id: str = Field(..., description="The correlation ID for the request.")

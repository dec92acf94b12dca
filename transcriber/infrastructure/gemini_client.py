import json
import time
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import pybreaker
import structlog
from pybreaker import CircuitBreaker, CircuitBreakerError

from transcriber.core.config import settings
from transcriber.core.exceptions import StreamFailure
from transcriber.domain.models import GenerationConfig, RequestPayload
from transcriber.domain.ports import TranscriptionClientPort

logger = structlog.get_logger(__name__)

BLOCKING_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}

# Only service-health failures count against the breaker, not bad payloads
BREAKER_STATUS_CODES = {429, 500, 502, 503, 504}


def _raise(exc: BaseException) -> None:
    raise exc


def _noop() -> None:
    return None


class _OpenedAtListener(pybreaker.CircuitBreakerListener):
    """Remembers when the breaker last moved to the open state."""

    def __init__(self):
        self.opened_at: Optional[float] = None

    def state_change(self, cb, old_state, new_state):
        if new_state is not None and new_state.name == pybreaker.STATE_OPEN:
            self.opened_at = time.monotonic()


class GeminiClient(TranscriptionClientPort):
    """Streams generateContent output from the Google Generative Language REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = settings.GEMINI_STREAM_TIMEOUT,
        connect_timeout: float = settings.GEMINI_CONNECT_TIMEOUT,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.breaker = breaker or CircuitBreaker(
            fail_max=settings.BREAKER_FAIL_MAX,
            reset_timeout=settings.BREAKER_RESET_TIMEOUT,
            name="gemini",
        )
        self._breaker_clock = _OpenedAtListener()
        self.breaker.add_listener(self._breaker_clock)
        self._trial_in_flight = False

    @property
    def stream_url(self) -> str:
        return f"{self.base_url}/v1beta/models/{self.model}:streamGenerateContent?alt=sse"

    def build_request(
        self,
        instructions: str,
        payload: RequestPayload,
        generation_config: GenerationConfig,
    ) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": instructions}, payload.to_wire()],
                }
            ],
            "generationConfig": generation_config.to_wire(),
        }

    def _admit(self) -> bool:
        """
        Decides whether a new stream may be opened.

        Returns True when the stream is the half-open trial request: once
        ``reset_timeout`` has elapsed on an open breaker, the next real
        request goes out and its outcome closes or reopens the breaker.

        Raises:
            StreamFailure: while the breaker is open, or while another trial
                request is still in flight.
        """
        state = self.breaker.current_state
        if state == pybreaker.STATE_CLOSED:
            return False
        if state == pybreaker.STATE_OPEN:
            opened_at = self._breaker_clock.opened_at
            if opened_at is not None and time.monotonic() - opened_at < self.breaker.reset_timeout:
                raise StreamFailure(f"circuit open for {self.model}")
            self.breaker.half_open()
            logger.info("gemini.breaker.half_open", model=self.model)
        if self._trial_in_flight:
            raise StreamFailure(f"circuit open for {self.model}: trial request in flight")
        self._trial_in_flight = True
        return True

    def _record_success(self) -> None:
        # A concurrent stream may have opened the breaker meanwhile
        if self.breaker.current_state == pybreaker.STATE_OPEN:
            return
        self.breaker.call(_noop)

    def _record_failure(self, failure: StreamFailure) -> None:
        if self.breaker.current_state == pybreaker.STATE_OPEN:
            return
        try:
            self.breaker.call(_raise, failure)
        except CircuitBreakerError:
            logger.error("gemini.breaker.opened", model=self.model, reason=failure.reason)
        except StreamFailure:
            pass  # counted, the caller raises it

    async def generate_stream(
        self,
        instructions: str,
        payload: RequestPayload,
        generation_config: GenerationConfig,
    ) -> AsyncIterator[str]:
        is_trial = self._admit()
        body = self.build_request(instructions, payload, generation_config)
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        log = logger.bind(model=self.model, mime_type=payload.mime_type)

        try:
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    async with client.stream("POST", self.stream_url, json=body, headers=headers) as response:
                        if response.status_code >= 400:
                            await response.aread()
                            raise StreamFailure(
                                _error_detail(response),
                                status_code=response.status_code,
                            )
                        log.info("gemini.stream.opened")
                        async for line in response.aiter_lines():
                            for fragment in _parse_sse_line(line, log):
                                yield fragment
            except StreamFailure as e:
                log.error("gemini.stream.failed", reason=e.reason, status_code=e.status_code)
                if e.status_code in BREAKER_STATUS_CODES:
                    self._record_failure(e)
                elif is_trial:
                    # the service answered, so the trial counts as healthy
                    self._record_success()
                raise
            except httpx.TimeoutException as e:
                failure = StreamFailure(f"Request to {self.model} timed out: {e}")
                log.error("gemini.stream.timeout", exc_info=True)
                self._record_failure(failure)
                raise failure from e
            except httpx.HTTPError as e:
                failure = StreamFailure(f"Transport error talking to {self.model}: {e}")
                log.error("gemini.stream.transport_error", error=str(e))
                self._record_failure(failure)
                raise failure from e

            self._record_success()
            log.info("gemini.stream.finished")
        finally:
            if is_trial:
                self._trial_in_flight = False


def _error_detail(response: httpx.Response) -> str:
    try:
        error = response.json().get("error", {})
        message = error.get("message")
        status = error.get("status")
        if message:
            return f"{status}: {message}" if status else message
    except (ValueError, AttributeError):
        pass
    return f"HTTP {response.status_code}: {response.text[:200]}"


def _parse_sse_line(line: str, log: structlog.stdlib.BoundLogger):
    """Yields the text increments carried by one SSE line, if any."""
    line = line.strip()
    if not line.startswith("data:"):
        return
    data = line[len("data:"):].strip()
    if not data or data.lower() == "[done]":
        return
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamFailure(f"Malformed stream chunk: {data[:200]}") from e

    chunks = chunk if isinstance(chunk, list) else [chunk]
    for item in chunks:
        if "error" in item:
            error = item["error"] or {}
            raise StreamFailure(
                error.get("message", "Unknown stream error"),
                status_code=error.get("code"),
            )

        block_reason = (item.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise StreamFailure(f"Prompt blocked: {block_reason}")

        candidates = item.get("candidates") or []
        if not candidates:
            continue
        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            text = part.get("text")
            if text:
                yield text

        finish_reason = candidate.get("finishReason")
        if finish_reason in BLOCKING_FINISH_REASONS:
            raise StreamFailure(f"Generation stopped: {finish_reason}")
        if finish_reason == "MAX_TOKENS":
            log.warning("gemini.stream.truncated", finish_reason=finish_reason)


def get_transcription_client() -> TranscriptionClientPort:
    return GeminiClient(
        base_url=settings.GEMINI_BASE_URL,
        api_key=settings.GEMINI_API_KEY,
        model=settings.GEMINI_MODEL,
    )

import asyncio
import gc

import pytest

from transcriber.core.exceptions import PreconditionViolation, StreamFailure
from transcriber.domain.models import ImageInput, Item, SlotStatus
from transcriber.services.orchestrator import BatchOrchestrator
from transcriber.services.result_store import ResultStore
from transcriber.services.streaming import StreamingRequestAdapter
from tests.mocks.mock_transcription_client import (
    Script,
    ScriptedTranscriptionClient,
    wait_until,
)


def _inputs(raws):
    return [ImageInput(content=raw, media_type="image/png", source=f"img{i}.png") for i, raw in enumerate(raws)]


def _orchestrator(client, store, **kwargs) -> BatchOrchestrator:
    return BatchOrchestrator(StreamingRequestAdapter(client), store, instructions="transcribe", **kwargs)


async def test_slots_exist_as_soon_as_submit_returns(images):
    store = ResultStore()
    gate = asyncio.Event()
    client = ScriptedTranscriptionClient(default=Script(["x"], gate=gate))
    orchestrator = _orchestrator(client, store)

    handle = orchestrator.submit(_inputs(images[:2]), 0)

    assert handle.indices == range(0, 2)
    for index in (0, 1):
        assert store.get(index).status in (SlotStatus.EMPTY, SlotStatus.ACCUMULATING)
    assert not handle.done()

    gate.set()
    await handle.wait()
    assert [store.get(i).status for i in (0, 1)] == [SlotStatus.DONE, SlotStatus.DONE]


async def test_fragment_order_is_preserved(images):
    store = ResultStore()
    client = ScriptedTranscriptionClient({images[0]: Script(["He", "llo"]), images[1]: Script(["Wor", "ld", "!"])})

    await _orchestrator(client, store).run(_inputs(images[:2]), 0)

    assert store.get(0).text == "Hello"
    assert store.get(1).text == "World!"


async def test_start_index_must_match_store_count(images):
    store = ResultStore()
    orchestrator = _orchestrator(ScriptedTranscriptionClient(), store)

    await orchestrator.run(_inputs(images[:2]), 0)
    with pytest.raises(PreconditionViolation):
        orchestrator.submit(_inputs(images[2:3]), 0)
    with pytest.raises(PreconditionViolation):
        orchestrator.submit(_inputs(images[2:3]), 3)
    assert store.count == 2

    handle = await orchestrator.run(_inputs(images[2:5]), 2)
    assert handle.indices == range(2, 5)
    assert store.count == 5


async def test_empty_batch_is_a_noop():
    store = ResultStore()
    client = ScriptedTranscriptionClient()

    handle = _orchestrator(client, store).submit([], 0)

    assert handle.done()
    assert handle.count == 0
    await handle.wait()
    assert store.count == 0
    assert client.calls == []


async def test_stream_failure_is_isolated_to_its_item(images):
    store = ResultStore()
    client = ScriptedTranscriptionClient(
        {
            images[0]: Script(["left"]),
            images[1]: Script(["half"], error=StreamFailure("RESOURCE_EXHAUSTED: quota", status_code=429)),
            images[2]: Script(["right"]),
        }
    )

    await _orchestrator(client, store).run(_inputs(images[:3]), 0)

    assert store.get(0).status == SlotStatus.DONE
    assert store.get(0).text == "left"
    failed = store.get(1)
    assert failed.status == SlotStatus.FAILED
    assert failed.error == "RESOURCE_EXHAUSTED: quota"
    assert failed.text == "half"
    assert store.get(2).status == SlotStatus.DONE
    assert store.get(2).text == "right"


async def test_invalid_input_fails_without_opening_a_stream(images):
    store = ResultStore()
    client = ScriptedTranscriptionClient()
    inputs = _inputs(images[:2])
    inputs.insert(1, ImageInput(content=b"", media_type="image/png"))

    await _orchestrator(client, store).run(inputs, 0)

    assert store.get(1).status == SlotStatus.FAILED
    assert store.get(1).error.startswith("InvalidInput")
    assert len(client.opened) == 2
    assert store.get(0).status == store.get(2).status == SlotStatus.DONE


async def test_unexpected_errors_are_contained(images):
    store = ResultStore()
    client = ScriptedTranscriptionClient({images[0]: Script(open_error=ValueError("bad payload"))})

    await _orchestrator(client, store).run(_inputs(images[:2]), 0)

    assert store.get(0).status == SlotStatus.FAILED
    assert "bad payload" in store.get(0).error
    assert store.get(1).status == SlotStatus.DONE


@pytest.mark.parametrize("mode", ["window", "sliding"])
async def test_open_streams_never_exceed_window(images, mode):
    store = ResultStore()
    client = ScriptedTranscriptionClient(default=Script(["a", "b", "c"]))

    await _orchestrator(client, store, max_concurrency=3, mode=mode).run(_inputs(images), 0)

    assert client.max_open_streams == 3
    assert all(slot.status == SlotStatus.DONE for slot in store.snapshot())


async def test_windows_join_before_the_next_one_starts(images):
    store = ResultStore()
    gates = {raw: asyncio.Event() for raw in images[:7]}
    client = ScriptedTranscriptionClient({raw: Script(["t"], gate=gate) for raw, gate in gates.items()})

    handle = _orchestrator(client, store, max_concurrency=5, mode="window").submit(_inputs(images[:7]), 0)

    await wait_until(lambda: client.open_streams == 5)
    assert client.opened == images[:5]

    gates[images[0]].set()
    gates[images[1]].set()
    await wait_until(lambda: store.get(0).is_terminal and store.get(1).is_terminal)
    await asyncio.sleep(0.01)
    assert client.open_streams == 3
    assert len(client.opened) == 5

    for raw in images[2:5]:
        gates[raw].set()
    await wait_until(lambda: len(client.opened) == 7)
    assert client.opened[5:] == images[5:7]
    assert client.max_open_streams == 5

    for raw in images[5:7]:
        gates[raw].set()
    await handle.wait()
    assert all(slot.status == SlotStatus.DONE for slot in store.snapshot())


async def test_sliding_mode_refills_freed_places(images):
    store = ResultStore()
    gates = {raw: asyncio.Event() for raw in images[:7]}
    client = ScriptedTranscriptionClient({raw: Script(["t"], gate=gate) for raw, gate in gates.items()})

    handle = _orchestrator(client, store, max_concurrency=5, mode="sliding").submit(_inputs(images[:7]), 0)

    await wait_until(lambda: client.open_streams == 5)
    assert client.opened == images[:5]

    gates[images[0]].set()
    gates[images[1]].set()
    await wait_until(lambda: len(client.opened) == 7)
    assert client.max_open_streams == 5

    for gate in gates.values():
        gate.set()
    await handle.wait()
    assert [slot.status for slot in store.snapshot()] == [SlotStatus.DONE] * 7


async def test_consecutive_batches_continue_the_index_sequence(images):
    store = ResultStore()
    client = ScriptedTranscriptionClient({raw: Script([f"#{i}"]) for i, raw in enumerate(images)})
    orchestrator = _orchestrator(client, store)

    first = orchestrator.submit(_inputs(images[:3]), 0)
    second = orchestrator.submit(_inputs(images[3:5]), store.count)
    await asyncio.gather(first.wait(), second.wait())

    assert second.start_index == 3
    assert [slot.text for slot in store.snapshot()] == ["#0", "#1", "#2", "#3", "#4"]


def test_invalid_construction_is_rejected():
    with pytest.raises(ValueError):
        _orchestrator(ScriptedTranscriptionClient(), ResultStore(), max_concurrency=0)
    with pytest.raises(ValueError):
        _orchestrator(ScriptedTranscriptionClient(), ResultStore(), mode="parallel")


def _live_item_sources():
    gc.collect()
    return {obj.source for obj in gc.get_objects() if isinstance(obj, Item)}


@pytest.mark.parametrize("mode", ["window", "sliding"])
async def test_finished_items_are_released_while_the_batch_runs(images, mode):
    store = ResultStore()
    gate = asyncio.Event()
    client = ScriptedTranscriptionClient({images[0]: Script(["a"]), images[1]: Script(["b"], gate=gate)})
    inputs = [
        ImageInput(content=images[0], media_type="image/png", source=f"released-{mode}-0"),
        ImageInput(content=images[1], media_type="image/png", source=f"released-{mode}-1"),
    ]

    handle = _orchestrator(client, store, mode=mode).submit(inputs, 0)
    await wait_until(lambda: store.get(0).is_terminal and client.open_streams == 1)
    await asyncio.sleep(0.01)

    live = _live_item_sources()
    assert f"released-{mode}-0" not in live
    assert f"released-{mode}-1" in live

    gate.set()
    await handle.wait()
    assert f"released-{mode}-1" not in _live_item_sources()


async def test_concurrency_limit_applies_per_batch(images):
    store = ResultStore()
    gate = asyncio.Event()
    client = ScriptedTranscriptionClient(default=Script(["t"], gate=gate))
    orchestrator = _orchestrator(client, store, max_concurrency=2)

    first = orchestrator.submit(_inputs(images[:3]), 0)
    second = orchestrator.submit(_inputs(images[3:6]), store.count)

    await wait_until(lambda: client.open_streams == 4)
    await asyncio.sleep(0.01)
    assert client.open_streams == 4

    gate.set()
    await asyncio.gather(first.wait(), second.wait())
    assert client.max_open_streams == 4
    assert [slot.status for slot in store.snapshot()] == [SlotStatus.DONE] * 6

import asyncio

import pytest

from sitegen.cancel import CancelToken
from sitegen.errors import ExtractionError, GenerationCancelled, GenerationError, RateLimitError, TransientProviderError
from sitegen.providers import StreamDelta, Usage
from sitegen.streaming import StreamAssembler, partial_confidence, speculative_parse

SITE = '{"id": "s1", "name": "TaskFlow", "pages": [{"id": "home", "name": "Home", "path": "/"}]}'


async def fragments(parts, fail_with=None):
    for part in parts:
        await asyncio.sleep(0)
        yield part
    if fail_with is not None:
        raise fail_with


def collect_events(assembler, source):
    async def go():
        return [ev async for ev in assembler.events(source)]

    return asyncio.run(go())


def test_per_character_stream_matches_single_fragment():
    one = asyncio.run(StreamAssembler("m1").collect(fragments([SITE])))
    many = asyncio.run(StreamAssembler("m1").collect(fragments(list(SITE))))
    assert one == many
    assert many["pages"][0]["path"] == "/"


def test_tiny_object_streamed_one_char_at_a_time():
    assert asyncio.run(StreamAssembler("m1").collect(fragments(list('{"a":1}')))) == {"a": 1}


def test_chunk_events_then_one_complete_event():
    events = collect_events(StreamAssembler("m1", min_partial_chars=10_000), fragments(["{\"a\":", " 1}"]))
    assert [e.kind for e in events] == ["chunk", "chunk", "complete"]
    assert events[-1].payload == {"a": 1}
    assert events[-1].confidence == 100


def test_partials_are_emitted_once_enough_text_arrives():
    assembler = StreamAssembler("m1", interval=0, min_partial_chars=0)
    events = collect_events(assembler, fragments([SITE[i : i + 9] for i in range(0, len(SITE), 9)]))
    partials = [e for e in events if e.kind == "partial"]
    assert partials
    assert partials[-1].partial["id"] == "s1"
    assert 0 < partials[-1].confidence <= 100


def test_min_partial_chars_gates_speculative_parsing():
    events = collect_events(StreamAssembler("m1", interval=0, min_partial_chars=100), fragments(['{"a": 1', "}"]))
    assert not [e for e in events if e.kind == "partial"]


def test_usage_from_stream_overrides_estimate():
    parts = [StreamDelta('{"a": 1}'), StreamDelta("", usage=Usage(5, 7, 12))]
    assembler = StreamAssembler("m1")
    asyncio.run(assembler.collect(fragments(parts)))
    assert assembler.buffer.tokens == 12
    assert assembler.stats()["chunks"] == 2


def test_tokens_are_estimated_without_usage():
    assembler = StreamAssembler("m1")
    asyncio.run(assembler.collect(fragments(['{"abc": "defgh"}'])))
    assert assembler.buffer.tokens == 4


def test_upstream_failure_keeps_partial_text():
    assembler = StreamAssembler("m1")
    source = fragments(['{"id": "s1", ', '"name"'], fail_with=RateLimitError("429", model="m1", retry_after=2))
    seen = []

    async def go():
        async for ev in assembler.events(source):
            seen.append(ev)

    with pytest.raises(RateLimitError) as info:
        asyncio.run(go())
    assert info.value.context["partial_text"] == '{"id": "s1", "name"'
    assert "partial_text" not in info.value.to_dict().get("details", {})
    assert seen[-1].kind == "error"
    assert seen[-1].error["code"] == "RATE_LIMITED"


def test_foreign_errors_are_wrapped_as_transient():
    source = fragments(['{"id"'], fail_with=ValueError("socket closed"))
    with pytest.raises(TransientProviderError) as info:
        asyncio.run(StreamAssembler("m1").collect(source))
    assert info.value.context["partial_text"] == '{"id"'


def test_unparseable_stream_raises_extraction_error():
    with pytest.raises(ExtractionError):
        asyncio.run(StreamAssembler("m9").collect(fragments(["no ", "json ", "here"])))


def test_cancellation_stops_the_stream():
    closed = []

    async def endless():
        try:
            while True:
                await asyncio.sleep(0)
                yield "x"
        finally:
            closed.append(True)

    async def go():
        token = CancelToken()
        assembler = StreamAssembler("m1", cancel=token)
        count = 0
        async for ev in assembler.events(endless()):
            count += 1
            if count == 3:
                token.cancel()

    with pytest.raises(GenerationCancelled):
        asyncio.run(go())
    assert closed == [True]


def test_speculative_parse_and_confidence():
    partial = speculative_parse('noise {"id": "s1", "name": "Acme", "pages": [{"name": "Home", "components": [')
    assert partial["id"] == "s1"
    assert partial_confidence(partial) == 10 + 10 + 20
    assert speculative_parse("no braces") is None
    full = {"id": 1, "name": 1, "pages": [{"components": {"root": {}}}], "globalStyles": {}, "navigation": {}, "metadata": {}}
    assert partial_confidence(full) == 100


def test_collect_without_a_complete_event_raises(monkeypatch):
    assembler = StreamAssembler("m1")

    async def no_events(_source):
        for ev in ():
            yield ev

    monkeypatch.setattr(assembler, "events", no_events)
    with pytest.raises(GenerationError, match="ended without a payload"):
        asyncio.run(assembler.collect(fragments([])))

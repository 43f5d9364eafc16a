"""Field session store: debounce, supersession, gating, regenerate, follow-ups."""

import asyncio

import pytest

from src.report_ai.domain.errors import AnalysisValidationError
from src.report_ai.observability.telemetry import list_recent_events
from src.report_ai.providers.base import ProviderError
from src.report_ai.security.auth_gate import SessionExpiredError
from src.report_ai.services.analysis_pipeline import FALLBACK_MESSAGE
from src.report_ai.services.field_session import (
    CONVERSATION_ERROR_PREFIX,
    AnalysisField,
    FieldSessionStore,
    FieldStatus,
)

from .utils import ScriptedGate, StubClient

CONTENT = "Completed integration tests for the policy module."
OTHER = "Completed integration tests and fixed 4 defects."
FINAL = (FieldStatus.SUCCEEDED, FieldStatus.FAILED)


def _store(client, **kwargs):
    kwargs.setdefault("debounce_seconds", 0.01)
    return FieldSessionStore(lambda: client, **kwargs)


async def _collect(agen):
    return [item async for item in agen]


def test_short_content_is_a_no_op():
    client = StubClient()
    store = _store(client)
    result = asyncio.run(store.analyze("weeklyTasks", "作業は順調です"))
    assert result is None
    assert store.get_state("weeklyTasks") is None
    assert store.status("weeklyTasks") == FieldStatus.IDLE
    assert client.calls == []


def test_successful_analysis_updates_state():
    client = StubClient(replies=["stage one", "SUMMARY"])
    store = _store(client)
    seen = []
    store.subscribe(lambda s: seen.append(s.status))
    result = asyncio.run(store.analyze("weeklyTasks", CONTENT))
    assert result == "SUMMARY"
    state = store.get_state("weeklyTasks")
    assert state.status == FieldStatus.SUCCEEDED
    assert state.has_run_once is True
    assert state.analysis == "SUMMARY"
    assert state.last_analyzed_snapshot == CONTENT
    assert seen == [FieldStatus.DEBOUNCING, FieldStatus.LOADING, FieldStatus.SUCCEEDED]


def test_has_run_once_gates_automatic_reanalysis():
    client = StubClient(replies=["s1", "SUMMARY"])
    store = _store(client)

    async def scenario():
        await store.analyze("issues", CONTENT)
        return await store.analyze("issues", OTHER)

    assert asyncio.run(scenario()) is None
    assert len(client.calls) == 2
    state = store.get_state("issues")
    assert state.current_text == OTHER
    assert state.analysis == "SUMMARY"


def test_regenerate_always_runs():
    client = StubClient(replies=["s1", "FIRST", "s1b", "SECOND"])
    store = _store(client)

    async def scenario():
        await store.analyze("issues", CONTENT)
        await store.analyze("issues", OTHER)  # gated
        return await store.regenerate("issues")

    assert asyncio.run(scenario()) == "SECOND"
    assert len(client.calls) == 4
    state = store.get_state("issues")
    assert state.last_analyzed_snapshot == OTHER
    assert state.has_run_once is True


def test_regenerate_without_content_is_rejected():
    store = _store(StubClient())
    with pytest.raises(AnalysisValidationError):
        asyncio.run(store.regenerate("issues"))


def test_supersession_yields_exactly_one_final_update():
    # first request is slow, second is fast
    client = StubClient(replies=["s1-old", "OLD", "s1-new", "NEW"], delays=[0.2, 0, 0, 0])
    store = _store(client)
    finals = []
    store.subscribe(lambda s: finals.append(s.analysis) if s.status in FINAL else None)

    async def scenario():
        first = asyncio.ensure_future(store.analyze("risks", CONTENT))
        await asyncio.sleep(0.05)  # first request is in flight
        second = await store.analyze("risks", OTHER)
        return await first, second

    first, second = asyncio.run(scenario())
    assert first is None
    assert second is not None
    assert finals == [second]
    assert store.get_state("risks").last_analyzed_snapshot == OTHER
    assert any(e.name == "superseded" for e in list_recent_events(field_name="risks"))


def test_edit_during_debounce_replaces_pending_timer():
    client = StubClient(replies=["s1", "ONLY"])
    store = _store(client, debounce_seconds=0.05)

    async def scenario():
        first = asyncio.ensure_future(store.analyze("risks", CONTENT))
        await asyncio.sleep(0)
        second = await store.analyze("risks", OTHER)
        return await first, second

    first, second = asyncio.run(scenario())
    assert (first, second) == (None, "ONLY")
    assert len(client.calls) == 2


def test_fallback_keeps_last_good_analysis():
    client = StubClient(replies=["s1", "GOOD"])
    store = _store(client)

    async def scenario():
        await store.analyze("issues", CONTENT)
        client.fail = True
        return await store.regenerate("issues")

    assert asyncio.run(scenario()) == FALLBACK_MESSAGE
    state = store.get_state("issues")
    assert state.status == FieldStatus.FAILED
    assert state.analysis == "GOOD"
    assert state.error == FALLBACK_MESSAGE
    assert state.error_kind == "fallback"


def test_clear_cancels_in_flight_request():
    client = StubClient(replies=["s1", "LATE"], delays=[0.2])
    store = _store(client)

    async def scenario():
        pending = asyncio.ensure_future(store.analyze("issues", CONTENT))
        await asyncio.sleep(0.05)
        assert store.clear("issues") is True
        return await pending

    assert asyncio.run(scenario()) is None
    assert store.get_state("issues") is None


def test_streaming_with_non_streaming_client_yields_one_fragment():
    client = StubClient(replies=["<think>x</think>Whole answer"], streaming=False)
    store = _store(client)
    fragments = asyncio.run(_collect(store.analyze_streaming("issues", CONTENT)))
    assert fragments == ["Whole answer"]
    state = store.get_state("issues")
    assert state.status == FieldStatus.SUCCEEDED
    assert state.analysis == "Whole answer"


def test_streaming_accumulates_fragments():
    client = StubClient(streaming=True, fragments=["Part ", "one"])
    store = _store(client, streaming_enabled=lambda: True)
    seen = []
    store.subscribe(lambda s: seen.append(s.status))
    fragments = asyncio.run(_collect(store.analyze_streaming("issues", CONTENT)))
    assert fragments == ["Part ", "one"]
    assert store.get_state("issues").analysis == "Part one"
    assert FieldStatus.STREAMING in seen


def test_streaming_failure_marks_field_failed():
    client = StubClient(streaming=True, fail=True)
    store = _store(client)
    with pytest.raises(ProviderError):
        asyncio.run(_collect(store.analyze_streaming("issues", CONTENT)))
    state = store.get_state("issues")
    assert state.status == FieldStatus.FAILED
    assert state.error_kind == "provider"
    assert state.analysis is None


def test_expired_session_is_refreshed_once():
    client = StubClient(replies=["s1", "SUMMARY"])
    gate = ScriptedGate(expired=True, can_refresh=True)
    store = _store(client, auth_gate=gate)
    assert asyncio.run(store.analyze("issues", CONTENT)) == "SUMMARY"
    assert gate.refresh_calls == 1


def test_unrecoverable_session_surfaces_unauthenticated():
    client = StubClient()
    gate = ScriptedGate(expired=True, can_refresh=False)
    store = _store(client, auth_gate=gate)
    with pytest.raises(SessionExpiredError):
        asyncio.run(store.analyze("issues", CONTENT))
    state = store.get_state("issues")
    assert state.status == FieldStatus.FAILED
    assert state.error_kind == "unauthenticated"
    assert client.calls == []
    assert gate.refresh_calls == 1


# ----------------------------------------------------------------------
# Follow-up conversation
# ----------------------------------------------------------------------
def _analyzed_store(client):
    store = _store(client)
    asyncio.run(store.analyze("issues", CONTENT))
    return store


def test_follow_up_requires_message_and_analysis():
    client = StubClient(replies=["s1", "SUMMARY"])
    store = _store(client)
    with pytest.raises(AnalysisValidationError):
        asyncio.run(store.send_follow_up("issues", "Why?"))
    asyncio.run(store.analyze("issues", CONTENT))
    with pytest.raises(AnalysisValidationError):
        asyncio.run(store.send_follow_up("issues", "   "))
    assert store.get_state("issues").conversation == ()


def test_follow_up_appends_user_and_assistant_messages():
    client = StubClient(replies=["s1", "SUMMARY", "Answer one", "Answer two"], delays=[0, 0, 0.05])
    store = _analyzed_store(client)

    async def scenario():
        return await asyncio.gather(
            store.send_follow_up("issues", "First question"),
            store.send_follow_up("issues", "Second question"),
        )

    replies = asyncio.run(scenario())
    assert replies == ["Answer one", "Answer two"]
    convo = store.get_state("issues").conversation
    assert [m.role for m in convo] == ["user", "user", "assistant", "assistant"]
    # the second turn waits for the first and sees its answer
    second_call = client.calls[-1]
    assert [m["content"] for m in second_call[1:]] == ["First question", "Answer one", "Second question"]
    assert store.get_state("issues").conversation_loading is False


def test_follow_up_error_is_appended_as_assistant_message():
    client = StubClient(replies=["s1", "SUMMARY"])
    store = _analyzed_store(client)
    client.fail = True
    with pytest.raises(ProviderError):
        asyncio.run(store.send_follow_up("issues", "Why?"))
    convo = store.get_state("issues").conversation
    assert convo[-1].role == "assistant"
    assert convo[-1].content.startswith(CONVERSATION_ERROR_PREFIX)
    # primary analysis is untouched
    assert store.get_state("issues").analysis == "SUMMARY"


def test_reply_dropped_when_conversation_cleared():
    client = StubClient(replies=["s1", "SUMMARY", "late reply"], delays=[0, 0, 0.1])
    store = _analyzed_store(client)

    async def scenario():
        pending = asyncio.ensure_future(store.send_follow_up("issues", "Why?"))
        await asyncio.sleep(0.02)
        store.clear_conversation("issues")
        return await pending

    assert asyncio.run(scenario()) is None
    assert store.get_state("issues").conversation == ()


def test_new_analysis_clears_conversation():
    client = StubClient(replies=["s1", "SUMMARY", "reply", "s1b", "SUMMARY2"])
    store = _analyzed_store(client)
    asyncio.run(store.send_follow_up("issues", "Why?"))
    assert len(store.get_state("issues").conversation) == 2
    asyncio.run(store.regenerate("issues"))
    assert store.get_state("issues").conversation == ()


def test_teardown_drops_all_fields():
    client = StubClient(replies=["a", "b", "c", "d"])
    store = _store(client)

    async def scenario():
        await store.analyze("issues", CONTENT)
        await store.analyze("risks", CONTENT)
        store.teardown()

    asyncio.run(scenario())
    assert store.list_states() == []


FRAGMENTS = ["f0 ", "f1 ", "f2 ", "f3 ", "f4"]


def test_superseded_stream_ends_quietly_with_one_final_update():
    client = StubClient(streaming=True, fragments=FRAGMENTS, fragment_delay=0.02)
    store = _store(client)
    finals = []
    store.subscribe(lambda s: finals.append(s.analysis) if s.status in FINAL else None)

    async def scenario():
        first_seen, second = [], None
        async for fragment in store.analyze_streaming("issues", CONTENT):
            first_seen.append(fragment)
            if second is None:
                second = asyncio.ensure_future(_collect(store.analyze_streaming("issues", OTHER)))
        return first_seen, await second

    first_seen, second_seen = asyncio.run(scenario())
    assert first_seen == ["f0 "]
    assert second_seen == FRAGMENTS
    assert finals == ["f0 f1 f2 f3 f4"]
    state = store.get_state("issues")
    assert state.status == FieldStatus.SUCCEEDED
    assert state.last_analyzed_snapshot == OTHER


def test_clear_mid_stream_ends_consumer_without_final_update():
    client = StubClient(streaming=True, fragments=FRAGMENTS, fragment_delay=0.02)
    store = _store(client)
    finals = []
    store.subscribe(lambda s: finals.append(s.status) if s.status in FINAL else None)

    async def scenario():
        seen = []
        async for fragment in store.analyze_streaming("issues", CONTENT):
            seen.append(fragment)
            store.clear("issues")
        await asyncio.sleep(0.1)
        return seen

    assert asyncio.run(scenario()) == ["f0 "]
    assert client.emitted == 1
    assert finals == []
    assert store.get_state("issues") is None


def test_closing_stream_early_aborts_backend_read():
    client = StubClient(streaming=True, fragments=FRAGMENTS, fragment_delay=0.02)
    store = _store(client)

    async def scenario():
        stream = store.analyze_streaming("issues", CONTENT)
        first = await stream.__anext__()
        await stream.aclose()
        await asyncio.sleep(0.2)
        return first

    assert asyncio.run(scenario()) == "f0 "
    assert client.emitted == 1
    state = store.get_state("issues")
    assert state.status == FieldStatus.IDLE
    assert state.analysis is None
    assert state.partial == ""
    assert "abandoned" in [e.name for e in list_recent_events(field_name="issues")]


def test_cancelled_caller_settles_field_and_aborts_request():
    client = StubClient(replies=["s1", "LATE"], delays=[0.5])
    store = _store(client)
    statuses = []
    store.subscribe(lambda s: statuses.append(s.status))

    async def scenario():
        pending = asyncio.ensure_future(store.analyze("issues", CONTENT))
        await asyncio.sleep(0.05)
        assert store.status("issues") == FieldStatus.LOADING
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

    asyncio.run(scenario())
    assert store.status("issues") == FieldStatus.IDLE
    assert statuses[-1] == FieldStatus.IDLE
    assert len(client.calls) == 1
    assert "abandoned" in [e.name for e in list_recent_events(field_name="issues")]


def test_cancelled_caller_keeps_previous_analysis():
    client = StubClient(replies=["s1", "GOOD", "s2", "LATE"], delays=[0, 0, 0.5])
    store = _store(client)

    async def scenario():
        await store.analyze("issues", CONTENT)
        pending = asyncio.ensure_future(store.regenerate("issues"))
        await asyncio.sleep(0.05)
        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending

    asyncio.run(scenario())
    state = store.get_state("issues")
    assert state.status == FieldStatus.SUCCEEDED
    assert state.analysis == "GOOD"


def test_finished_run_is_not_reported_as_superseded():
    client = StubClient(replies=["s1", "A", "s2", "B"])
    store = _store(client)

    async def scenario():
        await store.analyze("issues", CONTENT)
        await store.regenerate("issues")

    asyncio.run(scenario())
    names = [e.name for e in list_recent_events(field_name="issues")]
    assert "superseded" not in names
    assert names.count("succeeded") == 2


def test_finished_timer_does_not_clear_a_newer_timer():
    store = _store(StubClient(), debounce_seconds=0)

    async def scenario():
        f = AnalysisField(field_name="issues")
        waiting = asyncio.ensure_future(store._debounce(f, force=True))
        await asyncio.sleep(0)  # first timer is pending
        newer = asyncio.get_running_loop().create_future()
        f.timer = newer
        fired = await waiting
        kept = f.timer is newer
        newer.cancel()
        return fired, kept

    assert asyncio.run(scenario()) == (True, True)

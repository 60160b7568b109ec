"""Tests for the free-mode step orchestrator."""

import asyncio
from datetime import datetime, timezone

import pytest

from freelab.access import Claims, InMemoryMembership, StaticClaimsProvider
from freelab.errors import (
    AuthError,
    AuthorizationError,
    BackendError,
    MalformedOutputError,
    MeteringError,
    QuotaExceededError,
    ValidationError,
)
from freelab.llm_calls import Completion, GenerativeBackend
from freelab.metering import InMemoryUsageStore, Pricing, QuotaMeter, StaticQuotaStore
from freelab.orchestrator import StepOrchestrator, StepStage
from freelab.schemas import Environment, UsageDelta, UsageRow
from freelab.timeline import apply_post_action


MONTH = "2026-10"
CLASSROOM = "class-1"


class FakeBackend(GenerativeBackend):
    """Returns canned text and records every prompt it receives."""

    def __init__(self, text="{}", tokens_in=100, tokens_out=50, error=None):
        self.text = text
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.error = error
        self.calls = []

    async def complete(self, system_prompt, user_prompt):
        self.calls.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, tokens_in=self.tokens_in, tokens_out=self.tokens_out)


class FailingIncrementStore(InMemoryUsageStore):
    async def increment(self, classroom_id, month, delta):
        raise OSError("disk full")


class ExplodingMembership(InMemoryMembership):
    async def is_member(self, user_id, classroom_id):
        raise RuntimeError("directory unavailable")


def make_orchestrator(
    backend,
    *,
    store=None,
    claims=Claims(user_id="student-1"),
    membership=None,
    quota_cents=1,
    step_listeners=None,
):
    meter = QuotaMeter(
        store if store is not None else InMemoryUsageStore(),
        StaticQuotaStore(default_cents=quota_cents),
        Pricing(price_in=1, price_out=1),
        clock=lambda: datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
    )
    return StepOrchestrator(
        backend=backend,
        meter=meter,
        claims_provider=StaticClaimsProvider(claims),
        membership=membership if membership is not None else InMemoryMembership([("student-1", CLASSROOM)]),
        history_window=3,
        unknown_id_policy="accept",
        backend_timeout=5,
        step_listeners=step_listeners,
    )


def make_payload(**overrides):
    payload = {
        "classroomId": CLASSROOM,
        "env": {
            "id": "Beaker1",
            "type": "Beaker",
            "properties": {"pH": 7, "temperature": {"value": 25, "unit": "°C"}},
            "contents": {"liquids": {"Water": {"volume": {"value": 100, "unit": "mL"}}}},
            "attachedTools": ["pHmeter1"],
        },
        "action": {"type": "add", "material": "HCl", "amount": {"value": 20, "unit": "mL"}, "target": "Beaker1"},
        "history": [],
    }
    payload.update(overrides)
    return payload


def make_history(count):
    return [
        {
            "action": {"type": "stir", "target": "Beaker1"},
            "result": {"uiEvents": []},
            "timestamp": f"2026-10-19T09:00:{index:02d}Z",
        }
        for index in range(count)
    ]


# ============================================================================
# Successful steps
# ============================================================================


@pytest.mark.asyncio
async def test_step_clamps_ph_and_derives_meter_event():
    backend = FakeBackend('{"environment": {"id": "Beaker1", "properties": {"pH": -2}}}')
    store = InMemoryUsageStore()
    orchestrator = make_orchestrator(backend, store=store)

    status, body = await orchestrator.handle(None, make_payload())

    assert status == 200
    assert body["postAction"]["environment"] == {"id": "Beaker1", "properties": {"pH": 0}}
    assert body["uiEvents"] == [
        {"path": "properties.pH", "effect": "updatePHMeter", "payload": {"reading": 0}}
    ]
    assert body["postAction"]["uiEvents"] == body["uiEvents"]
    assert body["tokensIn"] == 100
    assert body["tokensOut"] == 50
    assert "quotaExceeded" not in body
    assert len(backend.calls) == 1

    usage = await store.get(CLASSROOM, MONTH)
    assert usage == UsageRow(requests=1, tokens_in=100, tokens_out=50, cost_micro_usd=150)


@pytest.mark.asyncio
async def test_step_keeps_explicit_events_first():
    backend = FakeBackend(
        '```json\n{"environment": {"id": "Beaker1", "properties": {"pH": 3, '
        '"instants": {"gas": {"compound": "CO2", "volume": 0.5}}}}, '
        '"uiEvents": [{"path": "properties.instants.gas", "effect": "spawnGasBubbles"}]}\n```'
    )
    result = await make_orchestrator(backend).step(None, make_payload())

    assert [event.effect for event in result.ui_events] == ["spawnGasBubbles", "updatePHMeter"]


@pytest.mark.asyncio
async def test_prompt_sees_only_the_last_three_history_records():
    backend = FakeBackend('{"uiEvents": []}')
    await make_orchestrator(backend).step(None, make_payload(history=make_history(10)))

    _, user_prompt = backend.calls[0]
    assert "09:00:06Z" not in user_prompt
    for index in (7, 8, 9):
        assert f"09:00:{index:02d}Z" in user_prompt


@pytest.mark.asyncio
async def test_step_that_crosses_the_quota_is_flagged():
    backend = FakeBackend('{"uiEvents": []}', tokens_in=1, tokens_out=1)
    store = InMemoryUsageStore()
    await store.increment(CLASSROOM, MONTH, UsageDelta(requests=0, cost_micro_usd=9_999))
    orchestrator = make_orchestrator(backend, store=store, quota_cents=1)

    status, body = await orchestrator.handle(None, make_payload())

    assert status == 200
    assert body["quotaExceeded"] is True
    assert (await store.get(CLASSROOM, MONTH)).cost_micro_usd == 10_001


@pytest.mark.asyncio
async def test_step_landing_exactly_on_the_quota_is_not_flagged():
    backend = FakeBackend('{"uiEvents": []}', tokens_in=1, tokens_out=1)
    store = InMemoryUsageStore()
    await store.increment(CLASSROOM, MONTH, UsageDelta(requests=0, cost_micro_usd=9_998))
    orchestrator = make_orchestrator(backend, store=store, quota_cents=1)

    status, body = await orchestrator.handle(None, make_payload())

    assert status == 200
    assert "quotaExceeded" not in body
    assert (await orchestrator.meter.admit(CLASSROOM)).allowed is False


class GatedBackend(FakeBackend):
    """Holds every call until ``expected`` calls are in flight."""

    def __init__(self, expected, **kwargs):
        super().__init__(**kwargs)
        self.expected = expected
        self.all_arrived = asyncio.Event()

    async def complete(self, system_prompt, user_prompt):
        self.calls.append((system_prompt, user_prompt))
        if len(self.calls) >= self.expected:
            self.all_arrived.set()
        await self.all_arrived.wait()
        return Completion(text=self.text, tokens_in=self.tokens_in, tokens_out=self.tokens_out)


@pytest.mark.asyncio
async def test_concurrently_admitted_steps_flag_the_one_that_crosses_the_quota():
    backend = GatedBackend(2, text='{"uiEvents": []}', tokens_in=3_000, tokens_out=3_000)
    store = InMemoryUsageStore()
    orchestrator = make_orchestrator(backend, store=store, quota_cents=1)

    first, second = await asyncio.gather(
        orchestrator.step(None, make_payload()),
        orchestrator.step(None, make_payload()),
    )

    assert sorted([first.quota_exceeded is True, second.quota_exceeded is True]) == [False, True]
    assert (await store.get(CLASSROOM, MONTH)).cost_micro_usd == 12_000


@pytest.mark.asyncio
async def test_concurrent_steps_record_every_call():
    backend = FakeBackend('{"uiEvents": []}', tokens_in=2, tokens_out=3)
    store = InMemoryUsageStore()
    orchestrator = make_orchestrator(backend, store=store, quota_cents=100)

    results = await asyncio.gather(*(orchestrator.step(None, make_payload()) for _ in range(5)))

    assert len(results) == 5
    usage = await store.get(CLASSROOM, MONTH)
    assert usage.requests == 5
    assert usage.cost_micro_usd == 25


@pytest.mark.asyncio
async def test_step_listeners_receive_request_and_result():
    backend = FakeBackend('{"environment": {"id": "Beaker1", "properties": {"pH": 2}}}')
    snapshots = []

    def remember(step_request, result):
        snapshots.append(apply_post_action(step_request.env, result.post_action))

    await make_orchestrator(backend, step_listeners=[remember]).step(None, make_payload())

    assert len(snapshots) == 1
    assert isinstance(snapshots[0], Environment)
    assert snapshots[0].properties.ph == 2
    assert snapshots[0].contents.liquids["Water"].volume.value == 100


# ============================================================================
# Rejections
# ============================================================================


@pytest.mark.asyncio
async def test_missing_claims_is_unauthorized():
    backend = FakeBackend()
    orchestrator = make_orchestrator(backend, claims=None)

    with pytest.raises(AuthError) as excinfo:
        await orchestrator.step(None, make_payload())
    assert excinfo.value.stage == StepStage.START.value

    status, body = await orchestrator.handle(None, make_payload())
    assert status == 401
    assert body["error"] == "UNAUTHORIZED"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_non_member_is_forbidden():
    backend = FakeBackend()
    orchestrator = make_orchestrator(backend, claims=Claims(user_id="student-2"))

    with pytest.raises(AuthorizationError) as excinfo:
        await orchestrator.step(None, make_payload())
    assert excinfo.value.stage == StepStage.AUTH_CHECKED.value

    status, body = await orchestrator.handle(None, make_payload())
    assert status == 403
    assert body["error"] == "FORBIDDEN"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_classroom_owner_is_allowed():
    backend = FakeBackend('{"uiEvents": []}')
    membership = InMemoryMembership(owners={CLASSROOM: "instructor-1"})
    orchestrator = make_orchestrator(backend, claims=Claims(user_id="instructor-1", role="instructor"), membership=membership)

    status, _ = await orchestrator.handle(None, make_payload())
    assert status == 200


@pytest.mark.asyncio
async def test_invalid_action_lists_issues():
    backend = FakeBackend()
    orchestrator = make_orchestrator(backend)
    payload = make_payload(action={"type": "heat", "target": "Beaker1"})

    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.step(None, payload)
    assert excinfo.value.stage == StepStage.AUTH_CHECKED.value

    status, body = await orchestrator.handle(None, payload)
    assert status == 400
    assert body["error"] == "INVALID_INPUT"
    assert body["issues"]
    assert backend.calls == []


@pytest.mark.asyncio
async def test_out_of_range_input_ph_is_rejected():
    payload = make_payload()
    payload["env"]["properties"]["pH"] = 15
    status, body = await make_orchestrator(FakeBackend()).handle(None, payload)

    assert status == 400
    assert [issue["path"] for issue in body["issues"]] == ["env.properties.pH"]


@pytest.mark.asyncio
async def test_non_object_body_is_invalid_input():
    status, body = await make_orchestrator(FakeBackend()).handle(None, ["not", "an", "object"])
    assert status == 400
    assert body["error"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_exhausted_quota_skips_the_backend():
    backend = FakeBackend()
    store = InMemoryUsageStore()
    await store.increment(CLASSROOM, MONTH, UsageDelta(cost_micro_usd=10_000))
    orchestrator = make_orchestrator(backend, store=store, quota_cents=1)

    with pytest.raises(QuotaExceededError) as excinfo:
        await orchestrator.step(None, make_payload())
    assert excinfo.value.stage == StepStage.INPUT_VALIDATED.value

    status, body = await orchestrator.handle(None, make_payload())
    assert status == 402
    assert body["error"] == "QUOTA_EXCEEDED"
    assert body["usage"]["costMicroUSD"] == 10_000
    assert body["quota"] == 10_000
    assert body["month"] == MONTH
    assert backend.calls == []
    assert (await store.get(CLASSROOM, MONTH)).requests == 1


@pytest.mark.asyncio
async def test_backend_failure_records_no_usage():
    store = InMemoryUsageStore()
    orchestrator = make_orchestrator(FakeBackend(error=RuntimeError("503 from provider")), store=store)

    with pytest.raises(BackendError) as excinfo:
        await orchestrator.step(None, make_payload())
    assert excinfo.value.stage == StepStage.QUOTA_ADMITTED.value

    status, body = await orchestrator.handle(None, make_payload())
    assert status == 502
    assert body["error"] == "BACKEND_ERROR"
    assert await store.get(CLASSROOM, MONTH) == UsageRow()


@pytest.mark.parametrize(
    "text",
    ["not json", '{"environment": {"properties": {"pH": 3}}}'],
)
@pytest.mark.asyncio
async def test_malformed_output_records_no_usage(text):
    store = InMemoryUsageStore()
    orchestrator = make_orchestrator(FakeBackend(text), store=store)

    with pytest.raises(MalformedOutputError) as excinfo:
        await orchestrator.step(None, make_payload())
    assert excinfo.value.stage == StepStage.GENERATIVE_CALL_COMPLETED.value

    status, body = await orchestrator.handle(None, make_payload())
    assert status == 500
    assert body["error"] == "MALFORMED_OUTPUT"
    assert text not in str(body)
    assert await store.get(CLASSROOM, MONTH) == UsageRow()


@pytest.mark.asyncio
async def test_metering_failure_is_surfaced():
    orchestrator = make_orchestrator(FakeBackend('{"uiEvents": []}'), store=FailingIncrementStore())

    with pytest.raises(MeteringError) as excinfo:
        await orchestrator.step(None, make_payload())
    assert excinfo.value.stage == StepStage.NORMALIZED.value

    status, body = await orchestrator.handle(None, make_payload())
    assert status == 500
    assert body["error"] == "INTERNAL_ERROR"


@pytest.mark.asyncio
async def test_unexpected_errors_map_to_internal_error():
    orchestrator = make_orchestrator(FakeBackend(), membership=ExplodingMembership())

    status, body = await orchestrator.handle(None, make_payload())

    assert status == 500
    assert body == {"error": "INTERNAL_ERROR", "message": "Unexpected error"}

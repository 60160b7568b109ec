"""Tests for logging tags: backend calls are [AI], pipeline work is [•], rejections are [!]."""

from __future__ import annotations

import pytest

from freelab.access import Claims, InMemoryMembership, StaticClaimsProvider
from freelab.llm_calls import Completion, GenerativeBackend
from freelab.logging_utils import Channel, Color, colored, emit
from freelab.metering import InMemoryUsageStore, Pricing, QuotaMeter, StaticQuotaStore
from freelab.orchestrator import StepOrchestrator


class CannedBackend(GenerativeBackend):
    def __init__(self, text):
        self.text = text

    async def complete(self, system_prompt, user_prompt):
        return Completion(text=self.text, tokens_in=10, tokens_out=5)


def make_orchestrator(text):
    return StepOrchestrator(
        backend=CannedBackend(text),
        meter=QuotaMeter(InMemoryUsageStore(), StaticQuotaStore(default_cents=500), Pricing(1, 1)),
        claims_provider=StaticClaimsProvider(Claims(user_id="student-1")),
        membership=InMemoryMembership([("student-1", "class-1")]),
    )


PAYLOAD = {
    "classroomId": "class-1",
    "env": {"id": "Beaker1", "type": "Beaker", "properties": {"pH": 7}},
    "action": {"type": "stir", "target": "Beaker1"},
}


def test_colored_respects_no_color(monkeypatch):
    monkeypatch.setenv("FREELAB_NO_COLOR", "1")
    assert colored("plain", Color.RED) == "plain"

    monkeypatch.delenv("FREELAB_NO_COLOR")
    monkeypatch.delenv("NO_COLOR", raising=False)
    assert colored("tinted", Color.RED, bold=True) == "\033[1m\033[91mtinted\033[0m"


def test_error_channel_writes_to_stderr(monkeypatch, capsys):
    monkeypatch.setenv("FREELAB_NO_COLOR", "1")
    emit(Channel.ERROR, "rejected")
    emit(Channel.INFO, "note")

    captured = capsys.readouterr()
    assert captured.err == "[!] rejected\n"
    assert captured.out == "[i] note\n"


@pytest.mark.asyncio
async def test_successful_step_tags_backend_and_pipeline_work(monkeypatch, capsys):
    monkeypatch.setenv("FREELAB_NO_COLOR", "1")

    await make_orchestrator('{"environment": {"id": "Beaker1", "properties": {"pH": 20}}}').step(None, PAYLOAD)

    out = capsys.readouterr().out
    assert "[AI] [Backend] Calling CannedBackend..." in out
    assert "[•] [Normalizer] Clamped environment.properties.pH: 20.0 -> 14" in out
    assert "[•] [Metering] class-1" in out
    assert "[✓] [Step] class-1: 1 UI event(s)" in out


@pytest.mark.asyncio
async def test_malformed_output_is_logged_without_reaching_the_body(monkeypatch, capsys):
    monkeypatch.setenv("FREELAB_NO_COLOR", "1")

    status, body = await make_orchestrator("the beaker fizzes happily").handle(None, PAYLOAD)

    err = capsys.readouterr().err
    assert status == 500
    assert "[!] [Normalizer] Unusable output" in err
    assert "the beaker fizzes happily" in err
    assert "[!] [Step] Rejected at GenerativeCallCompleted: MALFORMED_OUTPUT" in err
    assert "fizzes" not in str(body)

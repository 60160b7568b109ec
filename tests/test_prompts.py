"""Tests for step prompt construction."""

import pytest

from freelab.prompts import DEFAULT_PROMPTS, build_step_prompt, describe_action
from freelab.schemas import ActionRecord, AddAction, Environment, HeatAction, PostAction, StirAction


def make_env():
    return Environment.model_validate(
        {
            "id": "Beaker1",
            "type": "Beaker",
            "properties": {"pH": 7, "temperature": {"value": 25, "unit": "°C"}},
            "contents": {"liquids": {"Water": {"volume": {"value": 100, "unit": "mL"}}}},
            "attachedTools": ["pHmeter1"],
        }
    )


def make_add():
    return AddAction.model_validate(
        {"type": "add", "material": "HCl", "amount": {"value": 20, "unit": "mL"}, "target": "Beaker1"}
    )


def make_history(count):
    return [
        ActionRecord(
            action=StirAction(type="stir", target="Beaker1"),
            result=PostAction(),
            timestamp=f"2026-10-19T10:00:{index:02d}Z",
        )
        for index in range(count)
    ]


def test_describe_action_variants():
    assert describe_action(make_add()) == "Add 20 mL of HCl to Beaker1."
    assert (
        describe_action(HeatAction.model_validate({"type": "heat", "target": "B", "to": {"value": 60, "unit": "°C"}}))
        == "Heat B to 60 °C."
    )
    assert (
        describe_action(
            HeatAction.model_validate({"type": "heat", "target": "B", "delta": {"value": 10, "unit": "°C"}})
        )
        == "Heat B by 10 °C."
    )
    assert describe_action(StirAction(type="stir", target="B")) == "Stir B."
    assert (
        describe_action(
            StirAction.model_validate(
                {"type": "stir", "target": "B", "intensity": "high", "duration": {"value": 30, "unit": "s"}}
            )
        )
        == "Stir B (high intensity, for 30 s)."
    )


def test_describe_action_rejects_unknown_objects():
    with pytest.raises(TypeError):
        describe_action({"type": "add"})


def test_prompt_is_deterministic():
    env = make_env()
    first = build_step_prompt(env, make_add(), make_history(2))
    second = build_step_prompt(env.model_copy(deep=True), make_add(), make_history(2))

    assert first.instructions == second.instructions
    assert first.context == second.context


def test_prompt_includes_action_environment_and_known_ids():
    prompt = build_step_prompt(make_env(), make_add())

    assert "Add 20 mL of HCl to Beaker1." in prompt.context
    assert '"pH": 7.0' in prompt.context
    assert '"Beaker1"' in prompt.instructions
    assert '"pHmeter1"' in prompt.instructions
    assert "{{" not in prompt.instructions
    assert "{{" not in prompt.context


def test_prompt_without_tools_says_none():
    env = Environment(id="Flask1", type="Flask")
    prompt = build_step_prompt(env, StirAction(type="stir", target="Flask1"))
    assert "Tool ids must be one of: (none)." in prompt.instructions


def test_only_the_last_three_history_records_are_used():
    history = make_history(10)
    prompt = build_step_prompt(make_env(), make_add(), history)

    assert prompt.history == tuple(history[-3:])
    assert "10:00:06Z" not in prompt.context
    positions = [prompt.context.index(f"10:00:{index:02d}Z") for index in (7, 8, 9)]
    assert positions == sorted(positions)


def test_history_window_is_configurable():
    history = make_history(5)

    assert build_step_prompt(make_env(), make_add(), history, history_window=1).history == (history[-1],)
    assert build_step_prompt(make_env(), make_add(), history, history_window=0).history == ()


def test_default_library_has_step_template():
    template = DEFAULT_PROMPTS.get("step")
    assert "{{known_environment_ids}}" in template.system
    assert "{{history_json}}" in template.user

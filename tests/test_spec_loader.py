"""Tests for the specification loader."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from flowbot.errors import SpecValidationError
from flowbot.spec import load_spec, load_spec_from_string
from flowbot.spec.loader import normalize_action, resolve_env


class TestNormalizeAction:
    def test_scalar_shorthand(self) -> None:
        assert normalize_action({"reply": "Pong!"}) == {"action": "reply", "content": "Pong!"}

    def test_bare_name(self) -> None:
        assert normalize_action("defer") == {"action": "defer"}

    def test_mapping_body_keeps_modifiers(self) -> None:
        action = normalize_action({"reply": {"content": "hi"}, "when": "x > 1", "as": "sent"})
        assert action == {"action": "reply", "content": "hi", "when": "x > 1", "as": "sent"}

    def test_nested_bodies_are_normalized(self) -> None:
        action = normalize_action(
            {
                "flow_if": {
                    "if": "ok",
                    "then": [{"reply": "yes"}],
                    "else": ["defer"],
                }
            }
        )
        assert action["then"] == [{"action": "reply", "content": "yes"}]
        assert action["else"] == [{"action": "defer"}]

    def test_switch_cases(self) -> None:
        action = normalize_action(
            {"flow_switch": {"value": "x", "cases": {"a": [{"log": "A"}]}}}
        )
        assert action["cases"] == {"a": [{"action": "log", "message": "A"}]}

    def test_ambiguous_keys(self) -> None:
        with pytest.raises(SpecValidationError):
            normalize_action({"reply": "a", "log": "b"})


class TestLoadFromString:
    def test_mapping_sections(self) -> None:
        spec = load_spec_from_string(
            """
name: demo
commands:
  ping:
    actions:
      - reply: "Pong!"
events:
  ready:
    when: "true"
    actions: [{log: up}]
state:
  counter: 0
"""
        )
        assert spec.name == "demo"
        assert spec.command("ping").actions == [{"action": "reply", "content": "Pong!"}]
        assert spec.events[0].event == "ready"
        assert spec.variable("counter").default == 0

    def test_list_sections_and_scheduler_jobs(self) -> None:
        spec = load_spec_from_string(
            """
flows:
  - name: greet
    parameters: [{name: who, required: true}]
    actions: [{reply: "hi ${who}"}]
scheduler:
  jobs:
    - name: nightly
      cron: "0 3 * * *"
      actions: [{call_flow: greet}]
"""
        )
        assert spec.flow("greet").parameters[0].required is True
        assert spec.jobs[0].actions == [{"action": "call_flow", "flow": "greet"}]

    def test_state_variables_block(self) -> None:
        spec = load_spec_from_string(
            """
state:
  variables:
    - {name: xp, scope: member, default: 0, ttl: 1d}
"""
        )
        assert spec.variable("xp").scope == "member"
        assert spec.variable("xp").ttl_seconds == 86400

    def test_event_condition_alias_and_timing(self) -> None:
        spec = load_spec_from_string(
            """
events:
  - event: message
    condition: "len(content) > 0"
    throttle: 5s
"""
        )
        handler = spec.events[0]
        assert handler.when == "len(content) > 0"
        assert handler.throttle.seconds == 5

    def test_pipe_extras(self) -> None:
        spec = load_spec_from_string(
            """
pipes:
  - name: api
    type: http
    base_url: https://example.com
    handlers:
      response: [{log: got it}]
"""
        )
        pipe = spec.pipes[0]
        assert pipe.options == {"base_url": "https://example.com"}
        assert pipe.handlers[0].event == "response"

    def test_env_substitution(self) -> None:
        spec = load_spec_from_string("name: $env.BOT_NAME", env={"BOT_NAME": "envbot"})
        assert spec.name == "envbot"

    def test_missing_env_is_reported(self) -> None:
        with pytest.raises(SpecValidationError) as exc_info:
            resolve_env("token: $env.MISSING_TOKEN", env={})
        assert exc_info.value.problems == ["missing env: MISSING_TOKEN"]

    def test_validation_problems(self) -> None:
        with pytest.raises(SpecValidationError) as exc_info:
            load_spec_from_string(
                """
commands:
  - name: a
  - name: a
pipes:
  - name: p
    type: carrier_pigeon
"""
            )
        problems = exc_info.value.problems
        assert any("duplicate names: a" in p for p in problems)
        assert any(p.startswith("pipes.0.type") for p in problems)

    def test_yaml_error(self) -> None:
        with pytest.raises(SpecValidationError, match="YAML syntax error"):
            load_spec_from_string("commands: [unclosed")

    def test_spec_is_frozen(self) -> None:
        spec = load_spec_from_string("name: x")
        with pytest.raises(ValidationError):
            spec.name = "y"


class TestLoadFile:
    def test_imports_are_merged(self, tmp_path: Path) -> None:
        (tmp_path / "flows.yaml").write_text("flows:\n  helper:\n    - log: helping\n")
        main = tmp_path / "bot.yaml"
        main.write_text(
            "imports: [flows.yaml]\ncommands:\n  help:\n    - call_flow: helper\n"
        )
        spec = load_spec(main)
        assert spec.flow("helper") is not None
        assert spec.command("help") is not None

    def test_circular_import(self, tmp_path: Path) -> None:
        (tmp_path / "a.yaml").write_text("imports: [b.yaml]\n")
        (tmp_path / "b.yaml").write_text("imports: [a.yaml]\n")
        with pytest.raises(SpecValidationError, match="Circular import"):
            load_spec(tmp_path / "a.yaml")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecValidationError, match="not found"):
            load_spec(tmp_path / "nope.yaml")

from __future__ import annotations

import json
from typing import Any

import pytest
from click.testing import CliRunner

from agentgate.cli import main as cli_main
from agentgate.cli.main import cli
from agentgate.config import get_settings
from agentgate.errors import ProviderError
from agentgate.memory.noop import NoopMemoryStore
from agentgate.orchestrator.dispatch import FAILURE_MESSAGE
from agentgate.providers.base import ModelResponse
from agentgate.runtime import build_runtime


class ScriptedModel:
    def __init__(self, *texts: str, error: ProviderError | None = None) -> None:
        self.texts = list(texts)
        self.error = error
        self.prompts: list[list[dict[str, str]]] = []

    async def generate(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> ModelResponse:
        self.prompts.append(messages)
        if self.error is not None:
            raise self.error
        text = self.texts.pop(0) if len(self.texts) > 1 else self.texts[0]
        return ModelResponse(text=text)

    async def health_check(self) -> bool:
        return True


@pytest.fixture()
def runner(monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setattr(cli_main, "configure_logging", lambda *args, **kwargs: None)
    return CliRunner()


def _use_model(monkeypatch: pytest.MonkeyPatch, model: ScriptedModel) -> None:
    def _factory(settings: Any, *, sink: Any = None) -> Any:
        return build_runtime(settings, model=model, memory=NoopMemoryStore(), sink=sink)

    monkeypatch.setattr(cli_main, "build_runtime", _factory)


def test_ask_prints_reply(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_model(monkeypatch, ScriptedModel("hello operator"))
    result = runner.invoke(cli, ["ask", "hi there"])
    assert result.exit_code == 0, result.output
    assert "assistant > hello operator" in result.output


def test_ask_json_outcome(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_model(monkeypatch, ScriptedModel("done"))
    result = runner.invoke(cli, ["ask", "--json", "status?"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip().splitlines()[-1])
    assert payload["state"] == "Replied"
    assert payload["reply"] == "done"
    assert payload["model_calls"] == 1
    assert "assistant >" not in result.output


def test_ask_trace_lists_events(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_model(monkeypatch, ScriptedModel("ok"))
    result = runner.invoke(cli, ["ask", "--trace", "hi"])
    assert result.exit_code == 0, result.output
    assert "dispatch.received" in result.output
    assert "dispatch.outcome" in result.output


def test_ask_failure_exits_nonzero(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MODEL_RETRY_ATTEMPTS", "1")
    get_settings.cache_clear()
    _use_model(monkeypatch, ScriptedModel("unused", error=ProviderError("bad request")))
    result = runner.invoke(cli, ["ask", "hi"])
    assert result.exit_code == 1
    assert FAILURE_MESSAGE in result.output


def test_chat_session_commands(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    model = ScriptedModel("first", "second")
    _use_model(monkeypatch, model)
    script = "hello\n/pin call mum on sunday\n/reset\nagain\n/quit\n"
    result = runner.invoke(cli, ["chat"], input=script)
    assert result.exit_code == 0, result.output
    assert "local session" in result.output
    assert "assistant > first" in result.output
    assert "pinned" in result.output
    assert "session cleared" in result.output
    assert "assistant > second" in result.output
    # the reset dropped the earlier exchange, so the second prompt starts fresh
    second_prompt = " ".join(message["content"] for message in model.prompts[1])
    assert "hello" not in second_prompt
    assert "call mum" not in second_prompt


def test_chat_persists_sessions(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    _use_model(monkeypatch, ScriptedModel("noted"))
    result = runner.invoke(cli, ["chat"], input="remember this\n/quit\n")
    assert result.exit_code == 0, result.output
    stored = json.loads((get_settings().data_path / "sessions.json").read_text("utf-8"))
    contents = [turn["content"] for turn in stored["cli:local"]["history"]]
    assert contents == ["remember this", "noted"]


def test_heartbeat_runs_one_cycle(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    model = ScriptedModel("HEARTBEAT_OK")
    _use_model(monkeypatch, model)
    result = runner.invoke(cli, ["heartbeat"])
    assert result.exit_code == 0, result.output
    assert "HEARTBEAT_OK" in result.output
    assert any("Heartbeat tick" in message["content"] for message in model.prompts[0])


def test_config_redacts_secrets(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WEBHOOK_SECRET", "hunter2")
    monkeypatch.setenv("MODEL_API_KEY", "sk-live")
    get_settings.cache_clear()
    result = runner.invoke(cli, ["config", "--json"])
    assert result.exit_code == 0, result.output
    values = json.loads(result.output)
    assert values["WEBHOOK_SECRET"] == "[REDACTED]"
    assert values["MODEL_API_KEY"] == "[REDACTED]"
    assert values["APP_ENV"] == "dev"
    assert "hunter2" not in result.output


def test_config_rejects_invalid_prod(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "prod")
    get_settings.cache_clear()
    result = runner.invoke(cli, ["config"])
    assert result.exit_code != 0
    assert "invalid production configuration" in result.output

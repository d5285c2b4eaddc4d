from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from agentgate.errors import PolicyError, ToolError
from agentgate.memory.noop import NoopMemoryStore
from agentgate.memory.sqlite_store import SqliteMemoryStore
from agentgate.policy.sandbox import (
    Authorized,
    Rejected,
    RejectReason,
    SandboxPolicy,
    ToolEffect,
    authorize,
)
from agentgate.tools.builtin import register_builtin_tools
from agentgate.tools.registry import ToolRegistry
from agentgate.tools.runtime import ExecutorConfig, ToolExecutor


def _setup(tmp_path: Path) -> tuple[ToolRegistry, ToolExecutor, SandboxPolicy]:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    policy = SandboxPolicy(workspace_root=workspace, allowed_commands=frozenset({"echo", "ls"}))
    registry = ToolRegistry()
    register_builtin_tools(
        registry, workspace=policy.root, memory=NoopMemoryStore(), shell_timeout_seconds=5
    )
    return registry, ToolExecutor(registry, ExecutorConfig(timeout_seconds=5)), policy


async def _run(
    registry: ToolRegistry,
    executor: ToolExecutor,
    policy: SandboxPolicy,
    name: str,
    /,
    *,
    requested_by: str = "cli:local",
    **args: Any,
) -> dict[str, Any]:
    request = registry.build_request(name, args, requested_by)
    assert request is not None
    decision = authorize(request, policy)
    assert isinstance(decision, Authorized), decision
    return await executor.execute(decision)


def test_registry_exposes_schemas_and_effects(tmp_path: Path) -> None:
    registry, _, _ = _setup(tmp_path)
    assert registry.names() == [
        "audio_transcribe",
        "file_delete",
        "file_list",
        "file_read",
        "file_write",
        "memory_forget",
        "memory_recall",
        "memory_store",
        "shell",
        "skill_read",
        "youtube_download",
    ]
    shell = registry.build_request("shell", {"command": "ls"}, "cli:local")
    assert shell is not None
    assert shell.effect is ToolEffect.EXECUTE
    assert shell.command_param == "command"
    assert registry.build_request("nope", {}, "cli:local") is None
    schema = next(item for item in registry.schemas() if item["name"] == "file_write")
    assert schema["parameters"]["required"] == ["path", "content"]  # type: ignore[index]


@pytest.mark.asyncio
async def test_file_tools_round_trip(tmp_path: Path) -> None:
    registry, executor, policy = _setup(tmp_path)

    written = await _run(registry, executor, policy, "file_write", path="notes/a.md", content="hi")
    assert written["bytes"] == 2
    await _run(
        registry, executor, policy, "file_write", path="notes/a.md", content="!", append=True
    )
    read = await _run(registry, executor, policy, "file_read", path="notes/a.md")
    assert read["content"] == "hi!"
    listing = await _run(registry, executor, policy, "file_list", path="notes")
    assert listing["entries"] == [{"name": "a.md", "type": "file"}]
    deleted = await _run(registry, executor, policy, "file_delete", path="notes/a.md")
    assert deleted["deleted"] is True
    assert not (policy.root / "notes" / "a.md").exists()


@pytest.mark.asyncio
async def test_file_read_missing_file_raises_tool_error(tmp_path: Path) -> None:
    registry, executor, policy = _setup(tmp_path)
    with pytest.raises(ToolError):
        await _run(registry, executor, policy, "file_read", path="missing.md")


@pytest.mark.asyncio
async def test_file_delete_refuses_workspace_root(tmp_path: Path) -> None:
    registry, executor, policy = _setup(tmp_path)
    with pytest.raises(ToolError):
        await _run(registry, executor, policy, "file_delete", path=".")


@pytest.mark.asyncio
async def test_shell_runs_allowed_command(tmp_path: Path) -> None:
    registry, executor, policy = _setup(tmp_path)
    result = await _run(registry, executor, policy, "shell", command="echo hello")
    assert result["exit_code"] == 0
    assert result["stdout"] == "hello\n"
    assert result["truncated"] is False


def test_shell_rejects_command_outside_allowlist(tmp_path: Path) -> None:
    registry, _, policy = _setup(tmp_path)
    request = registry.build_request("shell", {"command": "rm -rf ."}, "cli:local")
    assert request is not None
    decision = authorize(request, policy)
    assert isinstance(decision, Rejected)
    assert decision.reason is RejectReason.COMMAND_NOT_ALLOWED


@pytest.mark.asyncio
async def test_skill_and_memory_tools(tmp_path: Path) -> None:
    registry, executor, policy = _setup(tmp_path)
    skill = policy.root / "skills" / "deploy"
    skill.mkdir(parents=True)
    (skill / "SKILL.md").write_text("# Deploy\n\nRun make deploy.\n", encoding="utf-8")

    loaded = await _run(registry, executor, policy, "skill_read", name="deploy")
    assert "make deploy" in loaded["content"]
    with pytest.raises(ToolError):
        await _run(registry, executor, policy, "skill_read", name="unknown")

    stored = await _run(registry, executor, policy, "memory_store", key="tea", content="green")
    assert stored == {"key": "tea", "stored": True}
    recalled = await _run(registry, executor, policy, "memory_recall", query="tea")
    assert recalled == {"items": []}


@pytest.mark.asyncio
async def test_executor_refuses_unauthorized_decisions(tmp_path: Path) -> None:
    _, executor, _ = _setup(tmp_path)
    rejected = Rejected(RejectReason.FORBIDDEN_PATH, "/etc")
    with pytest.raises(PolicyError):
        await executor.execute(rejected)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_executor_times_out_slow_tools(tmp_path: Path) -> None:
    registry, _, policy = _setup(tmp_path)

    async def slow(arguments: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(10)
        return {}

    registry.register("slow", "Sleeps.", slow)
    executor = ToolExecutor(registry, ExecutorConfig(timeout_seconds=0.05))
    with pytest.raises(ToolError, match="timed out"):
        await _run(registry, executor, policy, "slow")


@pytest.mark.asyncio
async def test_executor_retries_retryable_tool_errors(tmp_path: Path) -> None:
    registry, _, policy = _setup(tmp_path)
    attempts = {"count": 0}

    async def flaky(arguments: dict[str, Any]) -> dict[str, Any]:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise ToolError("busy", retryable=True)
        return {"ok": True}

    async def broken(arguments: dict[str, Any]) -> dict[str, Any]:
        attempts["count"] += 1
        raise ToolError("broken")

    registry.register("flaky", "Fails once.", flaky)
    registry.register("broken", "Always fails.", broken)
    executor = ToolExecutor(registry, ExecutorConfig(retry_attempts=2, retry_backoff_seconds=0))

    assert await _run(registry, executor, policy, "flaky") == {"ok": True}
    assert attempts["count"] == 2

    with pytest.raises(ToolError):
        await _run(registry, executor, policy, "broken")
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_memory_tools_are_scoped_to_the_caller(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    workspace.mkdir()
    policy = SandboxPolicy(workspace_root=workspace)
    registry = ToolRegistry()
    register_builtin_tools(
        registry, workspace=policy.root, memory=SqliteMemoryStore(tmp_path / "memory.db")
    )
    executor = ToolExecutor(registry, ExecutorConfig(timeout_seconds=5))
    alice, bob = "telegram:alice", "telegram:bob"

    await _run(
        registry,
        executor,
        policy,
        "memory_store",
        requested_by=alice,
        key="door",
        content="door code is 4711",
    )
    leaked = await _run(
        registry, executor, policy, "memory_recall", requested_by=bob, query="door code"
    )
    assert leaked == {"items": []}
    forgotten = await _run(
        registry, executor, policy, "memory_forget", requested_by=bob, key="door"
    )
    assert forgotten["forgotten"] is False

    own = await _run(
        registry, executor, policy, "memory_recall", requested_by=alice, query="door code"
    )
    assert [item["content"] for item in own["items"]] == ["door code is 4711"]


class FakeProcess:
    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self.stdout = stdout.encode()
        self.stderr = stderr.encode()
        self.returncode = returncode

    async def communicate(self) -> tuple[bytes, bytes]:
        return self.stdout, self.stderr

    def kill(self) -> None:
        pass

    async def wait(self) -> int:
        return self.returncode


def _fake_exec(
    monkeypatch: pytest.MonkeyPatch, respond: Any
) -> list[tuple[list[str], dict[str, Any]]]:
    calls: list[tuple[list[str], dict[str, Any]]] = []

    async def create_subprocess_exec(*argv: str, **kwargs: Any) -> FakeProcess:
        calls.append((list(argv), kwargs))
        return respond(list(argv))

    monkeypatch.setattr(asyncio, "create_subprocess_exec", create_subprocess_exec)
    return calls


@pytest.mark.asyncio
async def test_youtube_download_runs_ytdlp_without_shell(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    registry, executor, policy = _setup(tmp_path)

    def respond(argv: list[str]) -> FakeProcess:
        if "-J" in argv:
            return FakeProcess(json.dumps({"title": "Talk", "duration": 61, "formats": []}))
        return FakeProcess("filepath:/ws/downloads/Talk.mp3\n")

    calls = _fake_exec(monkeypatch, respond)
    result = await _run(
        registry, executor, policy, "youtube_download", url="https://youtu.be/abc"
    )

    assert result["file_paths"] == ["/ws/downloads/Talk.mp3"]
    assert result["metadata"] == {"title": "Talk", "duration": 61}
    assert result["output_dir"] == str(policy.root / "downloads")
    download = calls[-1][0]
    assert download[0] == "yt-dlp"
    assert download[-2:] == ["--", "https://youtu.be/abc"]
    assert "--extract-audio" in download
    assert "--no-playlist" in download
    assert calls[-1][1]["cwd"] == str(policy.root / "downloads")


@pytest.mark.asyncio
async def test_youtube_download_rejects_non_http_urls(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    registry, executor, policy = _setup(tmp_path)
    calls = _fake_exec(monkeypatch, lambda argv: FakeProcess())
    with pytest.raises(ToolError, match="http"):
        await _run(registry, executor, policy, "youtube_download", url="--exec=id")
    assert calls == []


@pytest.mark.asyncio
async def test_youtube_download_reports_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    registry, executor, policy = _setup(tmp_path)
    _fake_exec(monkeypatch, lambda argv: FakeProcess(stderr="Video unavailable", returncode=1))
    with pytest.raises(ToolError, match="Video unavailable"):
        await _run(registry, executor, policy, "youtube_download", url="https://youtu.be/x")


@pytest.mark.asyncio
async def test_audio_transcribe_local_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    registry, executor, policy = _setup(tmp_path)
    (policy.root / "memo.wav").write_bytes(b"RIFF")

    def respond(argv: list[str]) -> FakeProcess:
        out_dir = Path(argv[argv.index("--output_dir") + 1])
        (out_dir / "memo.txt").write_text("buy milk\n", encoding="utf-8")
        return FakeProcess()

    calls = _fake_exec(monkeypatch, respond)
    result = await _run(
        registry, executor, policy, "audio_transcribe", input="memo.wav", language="en"
    )

    assert result["transcript"] == "buy milk"
    transcripts = policy.root / "downloads" / "transcripts"
    assert result["files"] == [str(transcripts / "memo.txt")]
    argv = calls[0][0]
    assert argv[:2] == ["whisper-ctranslate2", str(policy.root / "memo.wav")]
    assert argv[argv.index("--output_format") + 1] == "txt"
    assert argv[argv.index("--language") + 1] == "en"


@pytest.mark.asyncio
async def test_audio_transcribe_reports_missing_backend(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    registry, executor, policy = _setup(tmp_path)
    (policy.root / "memo.wav").write_bytes(b"RIFF")

    async def missing(*argv: str, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(argv[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)
    with pytest.raises(ToolError, match="not found in PATH"):
        await _run(registry, executor, policy, "audio_transcribe", input="memo.wav")


def test_audio_transcribe_input_is_sandboxed(tmp_path: Path) -> None:
    registry, _, policy = _setup(tmp_path)
    request = registry.build_request("audio_transcribe", {"input": "../x.wav"}, "cli:local")
    assert request is not None
    decision = authorize(request, policy)
    assert isinstance(decision, Rejected)
    assert decision.reason is RejectReason.OUTSIDE_WORKSPACE

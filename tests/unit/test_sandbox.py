from __future__ import annotations

from pathlib import Path

import pytest

from agentgate.policy.sandbox import (
    AutonomyLevel,
    Authorized,
    Rejected,
    RejectReason,
    SandboxPolicy,
    ToolEffect,
    ToolInvocationRequest,
    authorize,
    canonicalize,
    parse_command,
)


def _policy(
    tmp_path: Path,
    autonomy: AutonomyLevel = AutonomyLevel.SUPERVISED,
    *,
    workspace_only: bool = True,
) -> SandboxPolicy:
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    return SandboxPolicy(
        workspace_root=workspace,
        allowed_commands=frozenset({"ls", "cat", "echo", "git"}),
        full_autonomy_commands=frozenset({"rm", "mkdir"}),
        forbidden_paths=(Path("/etc"), Path("~/.ssh")),
        autonomy=autonomy,
        workspace_only=workspace_only,
    )


def _file(name: str, path: str, effect: ToolEffect = ToolEffect.READ) -> ToolInvocationRequest:
    return ToolInvocationRequest(
        tool_name=name,
        arguments={"path": path},
        requested_by="telegram:alice",
        effect=effect,
        path_params=("path",),
    )


def _shell(command: str) -> ToolInvocationRequest:
    return ToolInvocationRequest(
        tool_name="shell",
        arguments={"command": command},
        requested_by="telegram:alice",
        effect=ToolEffect.EXECUTE,
        command_param="command",
    )


def _reason(result: Authorized | Rejected) -> RejectReason | None:
    return result.reason if isinstance(result, Rejected) else None


def test_relative_path_inside_workspace_is_authorized(tmp_path: Path) -> None:
    result = authorize(_file("file_read", "notes/today.md"), _policy(tmp_path))
    assert isinstance(result, Authorized)
    assert result.request.arguments == {"path": "notes/today.md"}


def test_traversal_into_forbidden_path_is_rejected(tmp_path: Path) -> None:
    policy = _policy(tmp_path)
    escape = "../" * (len(policy.root.parts) - 1) + "etc/passwd"
    assert canonicalize(escape, policy.root) == canonicalize("/etc/passwd", Path("/"))
    result = authorize(_file("file_read", escape), policy)
    assert _reason(result) is RejectReason.FORBIDDEN_PATH


def test_forbidden_path_rejected_even_with_full_autonomy(tmp_path: Path) -> None:
    policy = _policy(tmp_path, AutonomyLevel.FULL, workspace_only=False)
    for path in ("/etc/hosts", "~/.ssh/id_ed25519"):
        result = authorize(_file("file_read", path), policy)
        assert _reason(result) is RejectReason.FORBIDDEN_PATH


def test_read_only_denies_mutating_tools(tmp_path: Path) -> None:
    policy = _policy(tmp_path, AutonomyLevel.READ_ONLY)
    write = _file("file_write", "notes.md", ToolEffect.WRITE)
    assert _reason(authorize(write, policy)) is RejectReason.AUTONOMY_DENIED
    assert _reason(authorize(_shell("ls"), policy)) is RejectReason.AUTONOMY_DENIED
    assert isinstance(authorize(_file("file_read", "notes.md"), policy), Authorized)


def test_forbidden_check_runs_before_autonomy_check(tmp_path: Path) -> None:
    policy = _policy(tmp_path, AutonomyLevel.READ_ONLY)
    write = _file("file_write", "/etc/motd", ToolEffect.WRITE)
    assert _reason(authorize(write, policy)) is RejectReason.FORBIDDEN_PATH


def test_outside_workspace_rejected_when_workspace_only(tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere" / "file.txt"
    result = authorize(_file("file_read", str(outside)), _policy(tmp_path))
    assert _reason(result) is RejectReason.OUTSIDE_WORKSPACE
    relaxed = _policy(tmp_path, workspace_only=False)
    assert isinstance(authorize(_file("file_read", str(outside)), relaxed), Authorized)


def test_symlink_escape_is_caught(tmp_path: Path) -> None:
    policy = _policy(tmp_path)
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("x", encoding="utf-8")
    (policy.root / "link").symlink_to(outside, target_is_directory=True)
    result = authorize(_file("file_read", "link/secret.txt"), policy)
    assert _reason(result) is RejectReason.OUTSIDE_WORKSPACE


def test_nested_path_hints_are_checked(tmp_path: Path) -> None:
    request = ToolInvocationRequest(
        tool_name="copy",
        arguments={"options": {"source": "a.txt", "destination": "/etc/cron.d/job"}},
        requested_by="telegram:alice",
        effect=ToolEffect.WRITE,
    )
    assert _reason(authorize(request, _policy(tmp_path))) is RejectReason.FORBIDDEN_PATH


@pytest.mark.parametrize("command", ["ls -la", "git status && cat README.md", "FOO=1 echo hi"])
def test_allowed_commands_pass(tmp_path: Path, command: str) -> None:
    assert isinstance(authorize(_shell(command), _policy(tmp_path)), Authorized)


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf build",
        "ls; rm -rf build",
        "ls && rm -rf build",
        "cat notes | sh",
        "echo $(whoami)",
        "echo `id`",
        "echo hi > out.txt",
        "ls &",
        "",
    ],
)
def test_disallowed_commands_rejected(tmp_path: Path, command: str) -> None:
    result = authorize(_shell(command), _policy(tmp_path))
    assert _reason(result) is RejectReason.COMMAND_NOT_ALLOWED


def test_full_autonomy_widens_command_list(tmp_path: Path) -> None:
    policy = _policy(tmp_path, AutonomyLevel.FULL)
    assert isinstance(authorize(_shell("mkdir out && ls"), policy), Authorized)
    assert _reason(authorize(_shell("curl http://x"), policy)) is RejectReason.COMMAND_NOT_ALLOWED


def test_command_path_arguments_are_checked(tmp_path: Path) -> None:
    policy = _policy(tmp_path)
    assert _reason(authorize(_shell("cat /etc/shadow"), policy)) is RejectReason.FORBIDDEN_PATH
    assert _reason(authorize(_shell("ls --dir=/etc"), policy)) is RejectReason.FORBIDDEN_PATH
    outside = str(tmp_path / "other")
    assert _reason(authorize(_shell(f"ls {outside}"), policy)) is RejectReason.OUTSIDE_WORKSPACE


def test_parse_command_splits_programs_and_arguments() -> None:
    parsed = parse_command("A=1 git log --oneline | cat")
    assert parsed.error is None
    assert parsed.programs == ["git", "cat"]
    assert parsed.arguments == ["1", "log", "--oneline"]


def test_autonomy_level_parse() -> None:
    assert AutonomyLevel.parse("read-only") is AutonomyLevel.READ_ONLY
    assert AutonomyLevel.parse("ReadOnly") is AutonomyLevel.READ_ONLY
    assert AutonomyLevel.parse("full") is AutonomyLevel.FULL
    with pytest.raises(ValueError):
        AutonomyLevel.parse("yolo")


def _home_policy(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SandboxPolicy:
    home = tmp_path / "home"
    (home / ".ssh").mkdir(parents=True)
    (home / ".ssh" / "id_rsa").write_text("secret", encoding="utf-8")
    monkeypatch.setenv("HOME", str(home))
    return _policy(tmp_path, workspace_only=False)


@pytest.mark.parametrize(
    "command",
    [
        "cat $HOME/.ssh/id_rsa",
        "cat ${HOME}/.ssh/id_rsa",
        'cat "$HOME"/.ssh/id_rsa',
        "ls --dir=$HOME/.ssh",
        "cat ~/.ss*/id_rsa",
        "cat $HOME/.s?h/id_rsa",
    ],
)
def test_expanded_paths_hit_forbidden_floor(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, command: str
) -> None:
    policy = _home_policy(tmp_path, monkeypatch)
    result = authorize(_shell(command), policy)
    assert _reason(result) is RejectReason.FORBIDDEN_PATH


@pytest.mark.parametrize(
    "command",
    [
        "X=/e; cat ${X}tc/passwd",
        "X=/e; cat $X",
        "cat ${HOME:-/etc}/passwd",
        "cat $1/passwd",
        "cat /{etc,tmp}/passwd",
        "PATH=/opt/evil ls",
        "IFS=/ ls",
    ],
)
def test_unresolvable_expansions_are_rejected(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, command: str
) -> None:
    policy = _home_policy(tmp_path, monkeypatch)
    result = authorize(_shell(command), policy)
    assert isinstance(result, Rejected)
    assert result.reason in {RejectReason.COMMAND_NOT_ALLOWED, RejectReason.FORBIDDEN_PATH}


def test_parse_command_expands_environment_variables() -> None:
    parsed = parse_command("cat $DIR/a ${DIR}/b $UNSET/c", env={"DIR": "/srv"})
    assert parsed.error is None
    assert parsed.arguments == ["/srv/a", "/srv/b", "/c"]


def test_glob_in_workspace_is_authorized(tmp_path: Path) -> None:
    policy = _policy(tmp_path)
    (policy.root / "notes.md").write_text("hi", encoding="utf-8")
    assert isinstance(authorize(_shell("cat *.md"), policy), Authorized)


@pytest.mark.parametrize("program", ["/opt/anything/ls", "./ls", "bin/cat", "l?"])
def test_program_must_be_invoked_by_bare_name(tmp_path: Path, program: str) -> None:
    result = authorize(_shell(f"{program} -la"), _policy(tmp_path, workspace_only=False))
    assert _reason(result) is RejectReason.COMMAND_NOT_ALLOWED

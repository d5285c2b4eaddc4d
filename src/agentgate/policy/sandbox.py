"""Sandbox guard for model-requested tool invocations.

``authorize`` is a pure decision over a request and a policy, apart from the
filesystem lookups needed to canonicalize paths. Checks run in a fixed order:
forbidden paths, autonomy level, workspace containment, command allowlist.
"""

from __future__ import annotations

import glob
import logging
import os
import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from pathlib import Path
from typing import Any

from agentgate.config import Settings, split_csv

logger = logging.getLogger(__name__)

PATH_HINT_KEYS = {
    "path",
    "paths",
    "cwd",
    "file",
    "files",
    "dir",
    "directory",
    "target",
    "source",
    "destination",
}
SUBSTITUTION_MARKERS = ("`", "$(", "<(", ">(")
COMMAND_SEPARATORS = {";", "&&", "||", "|", "|&"}
ASSIGNMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=")
VARIABLE = re.compile(r"\$(?:\{([A-Za-z_][A-Za-z0-9_]*)\}|([A-Za-z_][A-Za-z0-9_]*))")
OTHER_EXPANSION = re.compile(r"\$[\w{@*#?$!-]")
BRACE_EXPANSION = re.compile(r"\{[^{}]*(?:,|\.\.)[^{}]*\}")
GLOB_CHARS = frozenset("*?[")
SHELL_ENV_KEYS = ("PATH", "HOME", "LANG", "LC_ALL", "TERM", "TZ")
PROTECTED_VARIABLES = frozenset({"PATH", "HOME", "IFS", "ENV", "BASH_ENV", "CDPATH", "SHELL"})


class AutonomyLevel(IntEnum):
    READ_ONLY = 0
    SUPERVISED = 1
    FULL = 2

    @classmethod
    def parse(cls, value: str) -> AutonomyLevel:
        normalized = value.strip().lower().replace("_", "").replace("-", "")
        mapping = {"readonly": cls.READ_ONLY, "supervised": cls.SUPERVISED, "full": cls.FULL}
        if normalized not in mapping:
            raise ValueError(f"unknown autonomy level: {value!r}")
        return mapping[normalized]


class ToolEffect(StrEnum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"

    @property
    def mutating(self) -> bool:
        return self is not ToolEffect.READ


class RejectReason(StrEnum):
    FORBIDDEN_PATH = "ForbiddenPath"
    AUTONOMY_DENIED = "AutonomyDenied"
    OUTSIDE_WORKSPACE = "OutsideWorkspace"
    COMMAND_NOT_ALLOWED = "CommandNotAllowed"


@dataclass(frozen=True, slots=True)
class ToolInvocationRequest:
    tool_name: str
    arguments: dict[str, Any]
    requested_by: str
    effect: ToolEffect = ToolEffect.READ
    path_params: tuple[str, ...] = ()
    command_param: str | None = None


@dataclass(frozen=True, slots=True)
class Authorized:
    request: ToolInvocationRequest


@dataclass(frozen=True, slots=True)
class Rejected:
    reason: RejectReason
    detail: str


@dataclass(frozen=True, slots=True)
class SandboxPolicy:
    workspace_root: Path
    allowed_commands: frozenset[str] = frozenset()
    full_autonomy_commands: frozenset[str] = frozenset()
    forbidden_paths: tuple[Path, ...] = ()
    autonomy: AutonomyLevel = AutonomyLevel.SUPERVISED
    workspace_only: bool = True
    _forbidden: tuple[Path, ...] = field(init=False, repr=False, compare=False)
    _root: Path = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        root = canonicalize(str(self.workspace_root), Path("/"))
        object.__setattr__(self, "_root", root)
        object.__setattr__(
            self,
            "_forbidden",
            tuple(canonicalize(str(item), root) for item in self.forbidden_paths),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> SandboxPolicy:
        return cls(
            workspace_root=settings.workspace_path,
            allowed_commands=frozenset(split_csv(settings.autonomy_allowed_commands)),
            full_autonomy_commands=frozenset(split_csv(settings.autonomy_full_commands)),
            forbidden_paths=tuple(
                Path(item) for item in split_csv(settings.autonomy_forbidden_paths)
            ),
            autonomy=AutonomyLevel.parse(settings.autonomy_level),
            workspace_only=int(settings.autonomy_workspace_only) == 1,
        )

    @property
    def root(self) -> Path:
        return self._root

    @property
    def canonical_forbidden(self) -> tuple[Path, ...]:
        return self._forbidden

    def effective_commands(self) -> frozenset[str]:
        if self.autonomy is AutonomyLevel.FULL:
            return self.allowed_commands | self.full_autonomy_commands
        return self.allowed_commands


def canonicalize(value: str, base: Path) -> Path:
    """Resolve ``value`` to an absolute path without requiring it to exist.

    Relative paths are joined to ``base``. The deepest existing ancestor is
    resolved through symlinks; the remaining components are applied lexically.
    """
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = base / path
    resolved = Path(path.anchor)
    for part in path.parts[1:]:
        if part in ("", "."):
            continue
        if part == "..":
            resolved = resolved.parent
            continue
        candidate = resolved / part
        try:
            if candidate.is_symlink() or candidate.exists():
                resolved = candidate.resolve()
                continue
        except OSError:
            pass
        resolved = candidate
    return resolved


def _is_subpath(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def _extract_hinted(arguments: dict[str, Any]) -> list[str]:
    found: list[str] = []

    def visit(value: Any, hint: str | None = None) -> None:
        if isinstance(value, dict):
            for key, child in value.items():
                visit(child, str(key))
            return
        if isinstance(value, list):
            for child in value:
                visit(child, hint)
            return
        if isinstance(value, str) and hint and hint.lower() in PATH_HINT_KEYS:
            clean = value.strip()
            if clean:
                found.append(clean)

    visit(arguments)
    return found


def _declared(arguments: dict[str, Any], names: Iterable[str]) -> list[str]:
    found: list[str] = []
    for name in names:
        value = arguments.get(name)
        if isinstance(value, str) and value.strip():
            found.append(value.strip())
        elif isinstance(value, list):
            found.extend(item.strip() for item in value if isinstance(item, str) and item.strip())
    return found


def _looks_like_path(token: str) -> bool:
    if "://" in token:
        return False
    return token.startswith(("/", "~", ".")) or "/" in token


@dataclass(slots=True)
class _ParsedCommand:
    programs: list[str] = field(default_factory=list)
    arguments: list[str] = field(default_factory=list)
    error: str | None = None


def shell_environment() -> dict[str, str]:
    """Environment handed to shell commands; variables are expanded against it."""
    return {key: os.environ[key] for key in SHELL_ENV_KEYS if key in os.environ}


def parse_command(command: str, env: dict[str, str] | None = None) -> _ParsedCommand:
    """Split a shell command into program names and argument tokens.

    ``$NAME`` and ``${NAME}`` are expanded against ``env`` (the shell
    environment by default) so expanded paths are checked like literal ones.
    Command substitution, redirection, subshells, background jobs, brace
    expansion and any other parameter expansion are reported as errors, as
    are references to variables the command assigns itself.
    """
    parsed = _ParsedCommand()
    if not command.strip():
        parsed.error = "empty command"
        return parsed
    for marker in SUBSTITUTION_MARKERS:
        if marker in command:
            parsed.error = f"command substitution is not allowed ({marker})"
            return parsed
    env = shell_environment() if env is None else env
    segments: list[list[str]] = []
    for line in command.splitlines():
        lexer = shlex.shlex(line, posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        try:
            tokens = list(lexer)
        except ValueError as exc:
            parsed.error = f"unparseable command: {exc}"
            return parsed
        segment: list[str] = []
        for token in [*tokens, ";"]:
            if token in COMMAND_SEPARATORS:
                if segment:
                    segments.append(segment)
                segment = []
                continue
            if token and set(token) <= set("();<>|&"):
                parsed.error = f"shell operator is not allowed ({token})"
                return parsed
            segment.append(token)

    assigned = {
        match.group(1)
        for segment in segments
        for token in segment
        if (match := ASSIGNMENT.match(token))
    }
    protected = sorted(assigned & PROTECTED_VARIABLES)
    if protected:
        parsed.error = f"assigning {protected[0]} is not allowed"
        return parsed
    try:
        for segment in segments:
            _split_segment([_expand(token, env, assigned) for token in segment], parsed)
    except ValueError as exc:
        parsed.error = str(exc)
        return parsed
    if not parsed.programs:
        parsed.error = "no program in command"
    return parsed


def _expand(token: str, env: dict[str, str], assigned: set[str]) -> str:
    if BRACE_EXPANSION.search(token):
        raise ValueError(f"brace expansion is not allowed ({token})")

    def substitute(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        if name in assigned:
            raise ValueError(f"variable {name} is assigned inside the command")
        return env.get(name, "")

    if OTHER_EXPANSION.search(VARIABLE.sub("", token)):
        raise ValueError(f"parameter expansion is not allowed ({token})")
    return VARIABLE.sub(substitute, token)


def _split_segment(tokens: list[str], parsed: _ParsedCommand) -> None:
    index = 0
    while index < len(tokens) and ASSIGNMENT.match(tokens[index]):
        parsed.arguments.append(tokens[index].split("=", 1)[1])
        index += 1
    if index >= len(tokens):
        return
    parsed.programs.append(tokens[index])
    for token in tokens[index + 1 :]:
        if "=" in token and token.startswith("-"):
            token = token.split("=", 1)[1]
        parsed.arguments.append(token)


def _glob_matches(token: str, root: Path) -> list[str]:
    pattern = os.path.expanduser(token)
    if not os.path.isabs(pattern):
        pattern = os.path.join(root, pattern)
    return glob.glob(pattern)


def authorize(request: ToolInvocationRequest, policy: SandboxPolicy) -> Authorized | Rejected:
    root = policy.root
    raw_paths = _declared(request.arguments, request.path_params)
    raw_paths.extend(_extract_hinted(request.arguments))

    parsed: _ParsedCommand | None = None
    program_paths: list[str] = []
    if request.command_param is not None:
        command = request.arguments.get(request.command_param)
        parsed = parse_command(command if isinstance(command, str) else "")
        for token in parsed.arguments:
            if GLOB_CHARS & set(token):
                # the shell expands the pattern against the filesystem at run time
                raw_paths.extend(_glob_matches(token, root))
                raw_paths.append(token)
            elif _looks_like_path(token):
                raw_paths.append(token)
        program_paths = [prog for prog in parsed.programs if "/" in prog]

    paths = list(dict.fromkeys(canonicalize(item, root) for item in raw_paths))
    programs = [canonicalize(item, root) for item in program_paths]

    for path in [*paths, *programs]:
        for forbidden in policy.canonical_forbidden:
            if _is_subpath(path, forbidden):
                return Rejected(RejectReason.FORBIDDEN_PATH, f"{path} is under {forbidden}")

    if policy.autonomy is AutonomyLevel.READ_ONLY and request.effect.mutating:
        return Rejected(
            RejectReason.AUTONOMY_DENIED,
            f"{request.tool_name} ({request.effect}) is not permitted in read-only mode",
        )

    if policy.workspace_only:
        for path in paths:
            if not _is_subpath(path, root):
                return Rejected(RejectReason.OUTSIDE_WORKSPACE, f"{path} is outside {root}")

    if parsed is not None:
        if parsed.error is not None:
            return Rejected(RejectReason.COMMAND_NOT_ALLOWED, parsed.error)
        allowed = policy.effective_commands()
        for program in parsed.programs:
            if "/" in program or GLOB_CHARS & set(program):
                # PATH lookup is the only way an allowlisted name resolves to a binary
                return Rejected(
                    RejectReason.COMMAND_NOT_ALLOWED, f"{program} must be invoked by name"
                )
            if program not in allowed:
                return Rejected(RejectReason.COMMAND_NOT_ALLOWED, f"{program} is not allowed")

    return Authorized(request)

"""Built-in tools: shell, workspace files, skills, memory and media.

Handlers assume the sandbox already approved their arguments; they only
resolve paths and report failures as ``ToolError``. Memory tools are scoped
to the identity that requested them.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import tempfile
from pathlib import Path
from typing import Any

from agentgate.errors import MemoryStoreError, ToolError
from agentgate.ids import new_id
from agentgate.memory.interfaces import MemoryStore
from agentgate.orchestrator.skills import read_skill
from agentgate.policy.sandbox import ToolEffect, canonicalize, shell_environment
from agentgate.tools.registry import ToolRegistry

_DEFAULT_MAX_CAPTURE_BYTES = 32 * 1024
TRANSCRIPT_FORMATS = {"text": "txt", "json": "json", "srt": "srt", "vtt": "vtt"}
DEFAULT_WHISPER_MODEL = "distil-large-v3"
_UNSAFE_FILENAME = re.compile(r"[^\w \-]")


def _truncate_text(value: str, max_bytes: int = _DEFAULT_MAX_CAPTURE_BYTES) -> tuple[str, bool]:
    encoded = value.encode("utf-8", errors="ignore")
    if len(encoded) <= max_bytes:
        return value, False
    clipped = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return clipped, True


async def _run_process(argv: list[str], cwd: Path, timeout: float) -> tuple[int, str, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=shell_environment(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ToolError(f"{argv[0]} not found in PATH") from exc
    try:
        stdout_raw, stderr_raw = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise ToolError(f"{Path(argv[0]).name} timed out after {timeout:g}s") from exc
    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout_raw.decode("utf-8", errors="replace"),
        stderr_raw.decode("utf-8", errors="replace"),
    )


def _require_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolError(f"missing required argument: {key}")
    return value


def _require_url(arguments: dict[str, Any], key: str) -> str:
    url = _require_str(arguments, key).strip()
    if not url.startswith(("http://", "https://")):
        raise ToolError(f"{key} must be an http(s) URL")
    return url


def _string_param(description: str) -> dict[str, object]:
    return {"type": "string", "description": description}


def _bool_param(description: str) -> dict[str, object]:
    return {"type": "boolean", "description": description}


def _subtitle_langs(value: Any) -> str:
    if isinstance(value, list):
        return ",".join(item.strip() for item in value if isinstance(item, str) and item.strip())
    if isinstance(value, str) and value.strip():
        return value.strip()
    return "en"


def _output_template(arguments: dict[str, Any], playlist: bool) -> str:
    custom = arguments.get("output_filename")
    if isinstance(custom, str) and custom.strip():
        return f"{_UNSAFE_FILENAME.sub('_', custom.strip())}.%(ext)s"
    if playlist:
        return "%(playlist)s/%(playlist_index)02d - %(title)s.%(ext)s"
    return "%(title)s.%(ext)s"


def _download_argv(
    binary: str, url: str, arguments: dict[str, Any], template: str
) -> list[str]:
    playlist = bool(arguments.get("playlist", False))
    argv = [
        binary,
        "-o",
        template,
        "--restrict-filenames",
        "--no-warnings",
        "--print",
        "after_move:filepath:%(filepath)s",
    ]
    if arguments.get("subtitles"):
        langs = _subtitle_langs(arguments.get("subtitle_langs"))
        argv += ["--write-subs", "--sub-langs", langs]
        argv += ["--sleep-requests", "1.5"] if langs == "all" else ["--write-auto-subs"]
    if arguments.get("thumbnails"):
        argv += ["--write-thumbnail", "--print", "thumbnail:%(thumbnail)s"]
    items = arguments.get("playlist_items")
    if playlist:
        argv.append("--yes-playlist")
        if isinstance(items, str) and items.strip():
            argv += ["-I", items.strip()]
    else:
        argv.append("--no-playlist")
    if str(arguments.get("mode", "audio")).lower() == "video":
        quality = str(arguments.get("quality") or "").strip()
        selector = (
            f"bestvideo[height<={quality}]+bestaudio/best"
            if quality.isdigit()
            else "bestvideo+bestaudio/best"
        )
        argv += ["--merge-output-format", "mp4", "-f", selector]
    else:
        argv += ["--extract-audio", "--audio-format", "mp3", "--audio-quality", "0"]
    argv += ["--", url]
    return argv


def register_builtin_tools(
    registry: ToolRegistry,
    *,
    workspace: Path,
    memory: MemoryStore,
    shell_timeout_seconds: float = 60.0,
    ytdlp_binary: str = "yt-dlp",
    whisper_binary: str = "whisper-ctranslate2",
) -> None:
    def resolve(raw: str) -> Path:
        return canonicalize(raw, workspace)

    def output_dir(arguments: dict[str, Any], default: str) -> Path:
        raw = arguments.get("output_dir")
        target = resolve(raw) if isinstance(raw, str) and raw.strip() else workspace / default
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ToolError(f"cannot create {target}: {exc}") from exc
        return target

    async def shell(arguments: dict[str, Any]) -> dict[str, Any]:
        command = _require_str(arguments, "command")
        cwd_raw = arguments.get("cwd")
        cwd = resolve(cwd_raw) if isinstance(cwd_raw, str) and cwd_raw.strip() else workspace
        if not cwd.is_dir():
            raise ToolError(f"cwd is not a directory: {cwd}")
        exit_code, stdout_text, stderr_text = await _run_process(
            ["/bin/sh", "-c", command], cwd, shell_timeout_seconds
        )
        stdout, stdout_truncated = _truncate_text(stdout_text)
        stderr, stderr_truncated = _truncate_text(stderr_text)
        return {
            "exit_code": exit_code,
            "stdout": stdout,
            "stderr": stderr,
            "truncated": stdout_truncated or stderr_truncated,
        }

    async def file_read(arguments: dict[str, Any]) -> dict[str, Any]:
        path = resolve(_require_str(arguments, "path"))
        if not path.is_file():
            raise ToolError(f"not a file: {path}")
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ToolError(f"cannot read {path}: {exc}") from exc
        content, truncated = _truncate_text(text)
        return {"path": str(path), "content": content, "truncated": truncated}

    async def file_write(arguments: dict[str, Any]) -> dict[str, Any]:
        path = resolve(_require_str(arguments, "path"))
        content = arguments.get("content")
        if not isinstance(content, str):
            raise ToolError("missing required argument: content")
        append = bool(arguments.get("append", False))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a" if append else "w", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise ToolError(f"cannot write {path}: {exc}") from exc
        return {"path": str(path), "bytes": len(content.encode("utf-8")), "append": append}

    async def file_list(arguments: dict[str, Any]) -> dict[str, Any]:
        raw = arguments.get("path")
        path = resolve(raw) if isinstance(raw, str) and raw.strip() else workspace
        if not path.is_dir():
            raise ToolError(f"not a directory: {path}")
        entries = [
            {"name": child.name, "type": "dir" if child.is_dir() else "file"}
            for child in sorted(path.iterdir())
        ]
        return {"path": str(path), "entries": entries[:500], "total": len(entries)}

    async def file_delete(arguments: dict[str, Any]) -> dict[str, Any]:
        path = resolve(_require_str(arguments, "path"))
        if path == workspace:
            raise ToolError("refusing to delete the workspace root")
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists() or path.is_symlink():
                path.unlink()
            else:
                raise ToolError(f"no such file: {path}")
        except OSError as exc:
            raise ToolError(f"cannot delete {path}: {exc}") from exc
        return {"path": str(path), "deleted": True}

    async def skill_read(arguments: dict[str, Any]) -> dict[str, Any]:
        name = _require_str(arguments, "name")
        text = read_skill(workspace, name.strip())
        if text is None:
            raise ToolError(f"unknown skill: {name}")
        content, truncated = _truncate_text(text)
        return {"name": name, "content": content, "truncated": truncated}

    async def memory_recall(arguments: dict[str, Any], requested_by: str) -> dict[str, Any]:
        query = _require_str(arguments, "query")
        limit = arguments.get("limit", 5)
        try:
            items = await memory.recall(
                query, limit=limit if isinstance(limit, int) else 5, scope=requested_by
            )
        except MemoryStoreError as exc:
            raise ToolError(str(exc), retryable=exc.retryable) from exc
        return {
            "items": [
                {"key": item.key, "content": item.content, "category": item.category}
                for item in items
            ]
        }

    async def memory_store(arguments: dict[str, Any], requested_by: str) -> dict[str, Any]:
        key = _require_str(arguments, "key")
        content = _require_str(arguments, "content")
        try:
            stored = await memory.store(key.strip(), content, scope=requested_by)
        except MemoryStoreError as exc:
            raise ToolError(str(exc), retryable=exc.retryable) from exc
        return {"key": stored, "stored": True}

    async def memory_forget(arguments: dict[str, Any], requested_by: str) -> dict[str, Any]:
        key = _require_str(arguments, "key")
        try:
            removed = await memory.forget(key.strip(), scope=requested_by)
        except MemoryStoreError as exc:
            raise ToolError(str(exc), retryable=exc.retryable) from exc
        return {"key": key, "forgotten": removed}

    async def youtube_download(arguments: dict[str, Any]) -> dict[str, Any]:
        url = _require_url(arguments, "url")
        target = output_dir(arguments, "downloads")
        if arguments.get("list_formats"):
            code, stdout, stderr = await _run_process(
                [ytdlp_binary, "-F", "--no-warnings", "--", url], target, shell_timeout_seconds
            )
            if code != 0:
                raise ToolError(f"yt-dlp -F failed: {stderr.strip()}")
            formats, truncated = _truncate_text(stdout)
            return {"formats": formats, "truncated": truncated}

        code, stdout, _ = await _run_process(
            [ytdlp_binary, "-J", "--no-download", "--no-warnings", "--", url],
            target,
            shell_timeout_seconds,
        )
        metadata: dict[str, Any] = {"title": "Unknown"}
        if code == 0:
            try:
                info = json.loads(stdout)
            except json.JSONDecodeError:
                info = {}
            if isinstance(info, dict):
                metadata = {
                    key: info[key]
                    for key in ("title", "uploader", "duration", "webpage_url")
                    if key in info
                } or metadata

        playlist = bool(arguments.get("playlist", False))
        argv = _download_argv(ytdlp_binary, url, arguments, _output_template(arguments, playlist))
        code, stdout, stderr = await _run_process(argv, target, shell_timeout_seconds)
        files: list[str] = []
        thumbnails: list[str] = []
        for line in stdout.splitlines():
            if line.startswith("filepath:"):
                files.append(line.removeprefix("filepath:").strip())
            elif line.startswith("thumbnail:") and line.removeprefix("thumbnail:").strip():
                thumbnails.append(line.removeprefix("thumbnail:").strip())
        if code != 0 or not files:
            raise ToolError(f"yt-dlp download failed: {stderr.strip() or 'no files downloaded'}")
        return {
            "file_paths": files,
            "thumbnails": thumbnails,
            "metadata": metadata,
            "output_dir": str(target),
        }

    async def audio_transcribe(arguments: dict[str, Any]) -> dict[str, Any]:
        source = _require_str(arguments, "input").strip()
        target = output_dir(arguments, "downloads/transcripts")
        fmt = str(arguments.get("format") or "text").lower()
        if fmt not in TRANSCRIPT_FORMATS:
            raise ToolError(f"unsupported format: {fmt}")
        model = str(arguments.get("model") or "auto")
        language = str(arguments.get("language") or "auto")

        with tempfile.TemporaryDirectory(prefix="agentgate-audio-") as scratch:
            if source.startswith(("http://", "https://")):
                stem = new_id("audio")
                code, _, stderr = await _run_process(
                    [
                        ytdlp_binary,
                        "--extract-audio",
                        "--audio-format",
                        "mp3",
                        "--no-playlist",
                        "-o",
                        f"{stem}.%(ext)s",
                        "--",
                        source,
                    ],
                    Path(scratch),
                    shell_timeout_seconds,
                )
                audio = Path(scratch) / f"{stem}.mp3"
                if code != 0 or not audio.is_file():
                    raise ToolError(f"failed to download audio: {stderr.strip()}")
            else:
                audio = resolve(source)
                if not audio.is_file():
                    raise ToolError(f"not a file: {audio}")

            argv = [
                whisper_binary,
                str(audio),
                "--model",
                DEFAULT_WHISPER_MODEL if model == "auto" else model,
                "--output_format",
                TRANSCRIPT_FORMATS[fmt],
                "--output_dir",
                str(target),
            ]
            if language != "auto":
                argv += ["--language", language]
            if arguments.get("word_timestamps"):
                argv += ["--word_timestamps", "True"]
            prompt = arguments.get("initial_prompt")
            if isinstance(prompt, str) and prompt.strip():
                argv += ["--initial_prompt", prompt.strip()]
            code, stdout, stderr = await _run_process(argv, target, shell_timeout_seconds)
            if code != 0:
                raise ToolError(f"transcription failed: {stderr.strip()}")

        output = target / f"{audio.stem}.{TRANSCRIPT_FORMATS[fmt]}"
        text = output.read_text(encoding="utf-8", errors="replace") if output.is_file() else stdout
        transcript, truncated = _truncate_text(text.strip())
        return {
            "transcript": transcript,
            "truncated": truncated,
            "format": fmt,
            "language": language,
            "files": [str(output)] if output.is_file() else [],
        }

    registry.register(
        "shell",
        "Run a shell command in the workspace. Only allow-listed programs are permitted.",
        shell,
        {
            "type": "object",
            "properties": {
                "command": _string_param("Command line to run"),
                "cwd": _string_param("Working directory, relative to the workspace"),
            },
            "required": ["command"],
        },
        effect=ToolEffect.EXECUTE,
        path_params=("cwd",),
        command_param="command",
    )
    registry.register(
        "file_read",
        "Read a text file from the workspace.",
        file_read,
        {
            "type": "object",
            "properties": {"path": _string_param("File path")},
            "required": ["path"],
        },
        path_params=("path",),
    )
    registry.register(
        "file_write",
        "Write or append text to a file in the workspace.",
        file_write,
        {
            "type": "object",
            "properties": {
                "path": _string_param("File path"),
                "content": _string_param("Text to write"),
                "append": {"type": "boolean", "description": "Append instead of overwrite"},
            },
            "required": ["path", "content"],
        },
        effect=ToolEffect.WRITE,
        path_params=("path",),
    )
    registry.register(
        "file_list",
        "List a directory in the workspace.",
        file_list,
        {"type": "object", "properties": {"path": _string_param("Directory path")}},
        path_params=("path",),
    )
    registry.register(
        "file_delete",
        "Delete a file or directory in the workspace.",
        file_delete,
        {
            "type": "object",
            "properties": {"path": _string_param("Path to delete")},
            "required": ["path"],
        },
        effect=ToolEffect.DELETE,
        path_params=("path",),
    )
    registry.register(
        "skill_read",
        "Load the full instructions of an installed skill by name.",
        skill_read,
        {
            "type": "object",
            "properties": {"name": _string_param("Skill name from the catalog")},
            "required": ["name"],
        },
    )
    registry.register(
        "memory_recall",
        "Search long-term memory.",
        memory_recall,
        {
            "type": "object",
            "properties": {
                "query": _string_param("Search text"),
                "limit": {"type": "integer", "description": "Maximum results"},
            },
            "required": ["query"],
        },
        scoped=True,
    )
    registry.register(
        "memory_store",
        "Store a fact in long-term memory under a key.",
        memory_store,
        {
            "type": "object",
            "properties": {
                "key": _string_param("Memory key"),
                "content": _string_param("Fact to remember"),
            },
            "required": ["key", "content"],
        },
        effect=ToolEffect.WRITE,
        scoped=True,
    )
    registry.register(
        "memory_forget",
        "Delete a long-term memory by key.",
        memory_forget,
        {
            "type": "object",
            "properties": {"key": _string_param("Memory key")},
            "required": ["key"],
        },
        effect=ToolEffect.DELETE,
        scoped=True,
    )
    registry.register(
        "youtube_download",
        "Download audio (default) or video from YouTube and other sites with yt-dlp. "
        "Returns the downloaded file paths and basic metadata.",
        youtube_download,
        {
            "type": "object",
            "properties": {
                "url": _string_param("Video or playlist URL"),
                "mode": {"type": "string", "enum": ["audio", "video"], "default": "audio"},
                "quality": _string_param("Maximum video height such as 720; ignored for audio"),
                "subtitles": _bool_param("Also download subtitles"),
                "subtitle_langs": {
                    "type": ["string", "array"],
                    "description": "Subtitle language codes, e.g. 'en,es'; defaults to en",
                },
                "thumbnails": _bool_param("Also download thumbnails"),
                "playlist": _bool_param("Treat the URL as a playlist"),
                "playlist_items": _string_param("Playlist range such as '1-5,10'"),
                "output_filename": _string_param("File name without extension"),
                "output_dir": _string_param("Directory in the workspace; defaults to downloads"),
                "list_formats": _bool_param("Only list the available formats"),
            },
            "required": ["url"],
        },
        effect=ToolEffect.EXECUTE,
        path_params=("output_dir",),
    )
    registry.register(
        "audio_transcribe",
        "Transcribe a workspace audio file or a video URL locally with faster-whisper.",
        audio_transcribe,
        {
            "type": "object",
            "properties": {
                "input": _string_param("Audio file in the workspace, or a video URL"),
                "model": _string_param("faster-whisper model name; auto picks a default"),
                "language": _string_param("Language code, or auto to detect"),
                "format": {
                    "type": "string",
                    "enum": sorted(TRANSCRIPT_FORMATS),
                    "default": "text",
                },
                "word_timestamps": _bool_param("Include word-level timestamps"),
                "initial_prompt": _string_param("Prompt to prime spelling and vocabulary"),
                "output_dir": _string_param("Directory for transcript files"),
            },
            "required": ["input"],
        },
        effect=ToolEffect.EXECUTE,
        path_params=("input", "output_dir"),
    )

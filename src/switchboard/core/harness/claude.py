"""
Claude Code harness adapter.

Wraps the `claude` CLI in print mode with ``--output-format stream-json``.
Every stdout line is a JSON message; known message types are forwarded
as-is, ``system/init`` additionally reports the session id, and ``result``
carries usage and ends the turn.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import re
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from .backend import BaseHarness, register_harness
from .cancellation import CancellationToken
from .errors import HarnessNotInstalledError
from .models import (
    CompleteEvent,
    DefunctSession,
    ErrorEvent,
    HarnessCapabilities,
    HarnessErrorCode,
    HarnessEvent,
    HarnessId,
    HarnessMeta,
    HarnessModel,
    HarnessQuery,
    HarnessUsage,
    InstallStatus,
    McpHttpServerConfig,
    McpServerConfig,
    MessageEvent,
    QueryMode,
    SessionStartedEvent,
    SlashCommand,
    ThinkingLevel,
    prompt_text,
)
from .spawn import spawn_jsonl
from .tool_server import ToolServerHandle, start_tool_server
from .which import read_version, resolve_executable

logger = logging.getLogger(__name__)

CLAUDE_BINARY = "claude"
PROBE_PROMPT = "__harness_probe__"

# Message types forwarded to callers; anything else is dropped
CLAUDE_MESSAGE_TYPES = frozenset(
    {
        "system",
        "assistant",
        "user",
        "result",
        "tool_progress",
        "tool_use_summary",
        "auth_status",
    }
)

CLAUDE_SYSTEM_SUBTYPES = frozenset(
    {
        "init",
        "status",
        "compact_boundary",
        "hook_started",
        "hook_progress",
        "hook_response",
        "task_notification",
        "files_persisted",
    }
)

EFFORT_LEVELS = {
    ThinkingLevel.LOW: "low",
    ThinkingLevel.MED: "medium",
    ThinkingLevel.HIGH: "high",
}

DEFUNCT_SESSION_PATTERN = re.compile(
    r"no conversation found with session id[:\s]+([a-f0-9-]+)", re.IGNORECASE
)


def build_claude_args(query: HarnessQuery, *, mcp_config_path: str | None = None) -> list[str]:
    """
    Translate a query into `claude` command-line arguments.

    Args:
        query: The query to run
        mcp_config_path: Path of a written MCP config file, if any

    Returns:
        Argument list (without the binary)
    """
    args = [
        "-p",
        prompt_text(query.prompt),
        "--output-format",
        "stream-json",
        "--verbose",
        "--setting-sources",
        "user,project,local",
    ]

    if query.system_prompt:
        args.extend(["--system-prompt", query.system_prompt])
    if query.append_system_prompt:
        args.extend(["--append-system-prompt", query.append_system_prompt])
    if query.model:
        args.extend(["--model", query.model])
    if query.thinking is not None:
        args.extend(["--effort", EFFORT_LEVELS[query.thinking]])

    if query.resume_session_id:
        args.extend(["--resume", query.resume_session_id])
        if query.fork_session:
            args.append("--fork-session")

    if query.mode == QueryMode.READ_ONLY:
        args.extend(["--permission-mode", "plan"])
    else:
        args.append("--dangerously-skip-permissions")

    if query.allowed_tools:
        args.extend(["--allowed-tools", ",".join(query.allowed_tools)])
    if query.disallowed_tools:
        args.extend(["--disallowed-tools", ",".join(query.disallowed_tools)])

    for directory in query.additional_directories:
        args.extend(["--add-dir", directory])

    if mcp_config_path:
        args.extend(["--mcp-config", mcp_config_path, "--strict-mcp-config"])

    return args


def build_claude_env(
    *,
    model: str | None = None,
    extra: dict[str, str] | None = None,
    disable_telemetry: bool = True,
) -> dict[str, str]:
    """
    Environment overrides for a `claude` process.

    The chosen model is pinned for every model tier and for subagents so a
    query never silently runs part of its work on another model.
    """
    # Cleared so the CLI does not refuse to start when the host itself
    # runs inside a Claude Code session
    env = {"CLAUDECODE": ""}
    if disable_telemetry:
        env["DISABLE_TELEMETRY"] = "1"
        env["DISABLE_ERROR_REPORTING"] = "1"
    if model:
        env["ANTHROPIC_DEFAULT_OPUS_MODEL"] = model
        env["ANTHROPIC_DEFAULT_SONNET_MODEL"] = model
        env["ANTHROPIC_DEFAULT_HAIKU_MODEL"] = model
        env["CLAUDE_CODE_SUBAGENT_MODEL"] = model
    if extra:
        env.update(extra)
    return env


def mcp_config_payload(servers: dict[str, McpServerConfig]) -> dict[str, Any]:
    """Build the ``--mcp-config`` document for ``servers``."""
    entries: dict[str, Any] = {}
    for name, server in servers.items():
        if isinstance(server, McpHttpServerConfig):
            entries[name] = {"type": "http", "url": server.url, "headers": dict(server.headers)}
        else:
            entry: dict[str, Any] = {
                "command": server.command,
                "args": list(server.args),
                "env": dict(server.env),
            }
            if server.cwd:
                entry["cwd"] = server.cwd
            entries[name] = entry
    return {"mcpServers": entries}


def write_mcp_config(servers: dict[str, McpServerConfig]) -> Path:
    """Write ``servers`` to a temporary MCP config file. Caller deletes it."""
    with tempfile.NamedTemporaryFile(
        "w", prefix="switchboard-mcp-", suffix=".json", delete=False, encoding="utf-8"
    ) as f:
        json.dump(mcp_config_payload(servers), f)
    return Path(f.name)


def classify_error(text: str) -> HarnessErrorCode:
    """Best-effort error code for a failed `claude` run."""
    lowered = text.lower()
    if "not logged in" in lowered or "authentication" in lowered or "invalid api key" in lowered:
        return HarnessErrorCode.AUTH_FAILED
    if "rate limit" in lowered or "429" in lowered:
        return HarnessErrorCode.RATE_LIMITED
    if "prompt is too long" in lowered or "context window" in lowered:
        return HarnessErrorCode.CONTEXT_OVERFLOW
    return HarnessErrorCode.PROCESS_CRASHED


def detect_defunct_session(texts: list[str]) -> DefunctSession | None:
    """
    Recognise `claude --resume` failing because the session is gone.

    Matches diagnostic wording of current CLI versions; returns None when
    nothing looks like a missing conversation.
    """
    combined = "\n".join(t for t in texts if t)
    if not combined:
        return None

    if match := DEFUNCT_SESSION_PATTERN.search(combined):
        return DefunctSession(session_id=match.group(1), detail=match.group(0))

    lowered = combined.lower()
    if "no conversation found" in lowered or ("session" in lowered and "not found" in lowered):
        return DefunctSession(detail=combined.strip().splitlines()[0])
    return None


class ClaudeStreamParser:
    """Stateful stdout parser for one `claude` run."""

    def __init__(self) -> None:
        self.result_seen = False
        self.usage: HarnessUsage | None = None

    def parse_line(self, line: str) -> list[HarnessEvent]:
        message = json.loads(line)
        if not isinstance(message, dict):
            return []

        message_type = message.get("type")
        if message_type not in CLAUDE_MESSAGE_TYPES:
            logger.debug(f"Dropping unknown claude message type: {message_type}")
            return []

        events: list[HarnessEvent] = []
        if message_type == "system":
            subtype = message.get("subtype")
            if subtype not in CLAUDE_SYSTEM_SUBTYPES:
                logger.debug(f"Unrecognised claude system subtype: {subtype}")
            if subtype == "init" and message.get("session_id"):
                events.append(SessionStartedEvent(session_id=message["session_id"]))

        events.append(MessageEvent(message=message))

        if message_type == "result":
            self.result_seen = True
            self.usage = self._usage_from_result(message)
            events.append(CompleteEvent(usage=self.usage))

        return events

    def on_exit(self, code: int, stderr: str) -> HarnessEvent | None:
        if code == 0 or self.result_seen:
            return None
        text = stderr.strip() or f"Claude process exited with code {code}"
        return ErrorEvent(error=text, code=classify_error(text))

    @staticmethod
    def _usage_from_result(message: dict[str, Any]) -> HarnessUsage:
        usage = message.get("usage") or {}
        return HarnessUsage(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cache_read_tokens=usage.get("cache_read_input_tokens"),
            cache_write_tokens=usage.get("cache_creation_input_tokens"),
            cost_usd=message.get("total_cost_usd"),
            duration_ms=message.get("duration_ms") or 0,
        )


def _parse_probe_line(line: str) -> list[HarnessEvent]:
    message = json.loads(line)
    if not isinstance(message, dict):
        return []
    if message.get("type") == "system" and message.get("subtype") == "init":
        return [MessageEvent(message=message)]
    if message.get("type") == "result":
        return [MessageEvent(message=message)]
    return []


def _probe_authenticated(message: dict[str, Any] | None) -> bool:
    if message is None:
        return False
    if message.get("type") == "system":
        return True
    if message.get("is_error"):
        text = json.dumps(message).lower()
        if "not logged in" in text or "authentication" in text:
            return False
    return not message.get("is_error", False)


@register_harness(HarnessId.CLAUDE_CODE)
class ClaudeCodeHarness(BaseHarness):
    """
    Claude Code CLI adapter.

    Features:
    - Session resume and fork via --resume / --fork-session
    - Read-only mode via plan permission mode
    - MCP servers via a temporary --mcp-config file
    - Client tools served over a loopback MCP server
    - Dollar cost reported by the CLI itself
    """

    harness_id = HarnessId.CLAUDE_CODE
    install_instructions = "Install Claude Code: npm install -g @anthropic-ai/claude-code"
    auth_instructions = "Run `claude login` to authenticate"

    def meta(self) -> HarnessMeta:
        return HarnessMeta(
            id=self.harness_id,
            name="Claude Code",
            vendor="Anthropic",
            website="https://docs.anthropic.com/en/docs/claude-code",
        )

    def capabilities(self) -> HarnessCapabilities:
        return HarnessCapabilities(
            supports_system_prompt=True,
            supports_append_system_prompt=True,
            supports_read_only=True,
            supports_mcp=True,
            supports_resume=True,
            supports_fork=True,
            supports_client_tools=True,
            supports_streaming_tokens=False,
            supports_cost_tracking=True,
            supports_named_tools=True,
            supports_images=True,
            thinking_levels=[ThinkingLevel.LOW, ThinkingLevel.MED, ThinkingLevel.HIGH],
        )

    def models(self) -> list[HarnessModel]:
        return [
            HarnessModel(id="opus", label="Opus 4.6", description="Most capable"),
            HarnessModel(
                id="sonnet", label="Sonnet 4.5", description="Balanced", is_default=True
            ),
            HarnessModel(id="haiku", label="Haiku 4.5", description="Fastest"),
        ]

    def _resolve_binary(self) -> str | None:
        return resolve_executable(CLAUDE_BINARY, self.binary_path)

    async def _run_probe(
        self,
        binary: str,
        *,
        cwd: str | None = None,
        token: CancellationToken | None = None,
    ) -> dict[str, Any] | None:
        """
        Start a throwaway print-mode run and return its first init or result message.

        The process is killed as soon as the init message arrives, before any
        model call is made.
        """
        probe_token = CancellationToken.linked(token)
        args = [
            "--print",
            PROBE_PROMPT,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        env = build_claude_env(disable_telemetry=self.config.privacy.disable_telemetry)
        try:
            async with contextlib.aclosing(
                spawn_jsonl(
                    binary,
                    args,
                    cwd=cwd,
                    env=env,
                    token=probe_token,
                    parse_line=_parse_probe_line,
                )
            ) as stream:
                async for event in stream:
                    if isinstance(event, MessageEvent):
                        return event.message
        finally:
            probe_token.cancel()
        return None

    async def _probe_install_status(self) -> InstallStatus:
        binary = self._resolve_binary()
        if binary is None:
            return InstallStatus(
                installed=False,
                auth_type="account",
                authenticated=False,
                install_instructions=self.install_instructions,
                auth_instructions=self.auth_instructions,
            )

        version = await read_version(binary, timeout=self.config.probes.version_timeout_seconds)
        try:
            message = await asyncio.wait_for(
                self._run_probe(binary), timeout=self.config.probes.install_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.debug("Claude auth probe timed out")
            message = None

        authenticated = _probe_authenticated(message)
        return InstallStatus(
            installed=True,
            version=version,
            auth_type="account",
            authenticated=authenticated,
            auth_instructions=None if authenticated else self.auth_instructions,
        )

    async def _probe_slash_commands(
        self, cwd: str, token: CancellationToken
    ) -> list[SlashCommand]:
        binary = self._resolve_binary()
        if binary is None:
            return []

        message = await self._run_probe(binary, cwd=cwd, token=token)
        if not message or message.get("type") != "system":
            return []

        commands = [
            SlashCommand(name=name, type="slash_command")
            for name in _names(message.get("slash_commands"))
        ]
        commands.extend(
            SlashCommand(name=name, type="skill") for name in _names(message.get("skills"))
        )
        return commands

    async def query(self, query: HarnessQuery) -> AsyncIterator[HarnessEvent]:
        binary = self._resolve_binary()
        if binary is None:
            raise HarnessNotInstalledError(self.harness_id.value, self.install_instructions)

        mcp_servers: dict[str, McpServerConfig] = dict(query.mcp_servers)
        allowed_tools = list(query.allowed_tools)
        tool_server: ToolServerHandle | None = None
        mcp_config_path: Path | None = None

        try:
            if query.client_tools:
                tool_server = await start_tool_server(query.client_tools)
                mcp_servers[tool_server.server_name] = tool_server.mcp_server
                for tool in query.client_tools:
                    qualified = f"mcp__{tool_server.server_name}__{tool.name}"
                    if qualified not in allowed_tools:
                        allowed_tools.append(qualified)

            if mcp_servers:
                mcp_config_path = write_mcp_config(mcp_servers)

            args = build_claude_args(
                dataclasses.replace(query, allowed_tools=allowed_tools),
                mcp_config_path=str(mcp_config_path) if mcp_config_path else None,
            )
            env = build_claude_env(
                model=query.model,
                extra=query.env,
                disable_telemetry=self.config.privacy.disable_telemetry,
            )
            parser = ClaudeStreamParser()

            async with contextlib.aclosing(
                spawn_jsonl(
                    binary,
                    args,
                    cwd=query.cwd,
                    env=env,
                    token=query.token,
                    parse_line=parser.parse_line,
                    on_exit=parser.on_exit,
                )
            ) as stream:
                async for event in stream:
                    yield event
        finally:
            if tool_server is not None:
                await tool_server.stop()
            if mcp_config_path is not None:
                mcp_config_path.unlink(missing_ok=True)

    def defunct_session_id(
        self,
        *,
        stderr: list[str],
        errors: list[str],
        messages: list[dict[str, Any]],
    ) -> DefunctSession | None:
        texts = list(stderr) + list(errors)
        for message in messages:
            if message.get("type") == "result":
                texts.extend(str(e) for e in message.get("errors") or [])
        return detect_defunct_session(texts)


def _names(value: Any) -> list[str]:
    names: list[str] = []
    for item in value or []:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and isinstance(item.get("name"), str):
            names.append(item["name"])
    return names

"""
Codex harness adapter.

Wraps ``codex exec --json``. Codex emits thread/turn/item events; the
thread id is the session id and ``turn.completed`` carries token usage.
Codex does not report dollar cost, so it is computed from a pricing table.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import re
import tempfile
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backend import BaseHarness, register_harness
from .errors import HarnessNotInstalledError
from .models import (
    CompleteEvent,
    ErrorEvent,
    HarnessCapabilities,
    HarnessErrorCode,
    HarnessEvent,
    HarnessId,
    HarnessMeta,
    HarnessModel,
    HarnessQuery,
    HarnessUsage,
    ImagePart,
    InstallStatus,
    McpHttpServerConfig,
    McpServerConfig,
    MessageEvent,
    QueryMode,
    SessionStartedEvent,
    ThinkingLevel,
    prompt_text,
)
from .spawn import spawn_jsonl
from .tool_server import ToolServerHandle, start_tool_server
from .which import read_version, resolve_executable

logger = logging.getLogger(__name__)

CODEX_BINARY = "codex"

REASONING_EFFORT = {
    ThinkingLevel.LOW: "low",
    ThinkingLevel.MED: "medium",
    ThinkingLevel.HIGH: "xhigh",
}

BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


# ==============================================================================
# Pricing
# ==============================================================================


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input_per_million: float
    output_per_million: float
    cache_read_per_million: float | None = None


CODEX_PRICING: dict[str, ModelPricing] = {
    "codex-mini-latest": ModelPricing(1.5, 6.0, 0.375),
    "gpt-5-codex": ModelPricing(1.25, 10.0, 0.125),
    "gpt-5.1-codex": ModelPricing(1.25, 10.0, 0.125),
    "gpt-5.1-codex-max": ModelPricing(1.25, 10.0, 0.125),
    "gpt-5.1-codex-mini": ModelPricing(0.25, 2.0, 0.025),
    "gpt-5.2-codex": ModelPricing(1.75, 14.0, 0.175),
    "gpt-5.3-codex": ModelPricing(1.75, 14.0, 0.175),
    "gpt-5.3-codex-spark": ModelPricing(1.75, 14.0, 0.175),
}

# Reasoning-effort suffixes do not change per-token pricing
EFFORT_SUFFIXES = ("-xhigh", "-high", "-medium", "-low")


def resolve_pricing(model: str) -> ModelPricing | None:
    lowered = model.lower()
    if lowered in CODEX_PRICING:
        return CODEX_PRICING[lowered]
    for suffix in EFFORT_SUFFIXES:
        if lowered.endswith(suffix):
            base = lowered[: -len(suffix)]
            if base in CODEX_PRICING:
                return CODEX_PRICING[base]
    return None


def calculate_cost(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    cache_read_tokens: int | None = None,
) -> float | None:
    """
    Estimate the dollar cost of a Codex turn.

    Returns:
        Cost in USD, or None when the model is unknown or unset
    """
    if not model:
        return None
    pricing = resolve_pricing(model)
    if pricing is None:
        return None

    cost = (input_tokens / 1_000_000) * pricing.input_per_million
    cost += (output_tokens / 1_000_000) * pricing.output_per_million
    if cache_read_tokens and pricing.cache_read_per_million:
        cost += (cache_read_tokens / 1_000_000) * pricing.cache_read_per_million
    return cost


# ==============================================================================
# Argument building
# ==============================================================================


def escape_toml(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


@dataclass
class McpOverrides:
    """``-c`` config overrides plus env vars holding secrets they reference."""

    config_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


def build_mcp_overrides(servers: dict[str, McpServerConfig]) -> McpOverrides:
    """
    Express MCP servers as codex ``-c`` overrides instead of editing config.toml.

    Bearer tokens are passed through environment variables so they never
    appear on the command line.
    """
    overrides = McpOverrides()

    for name, server in servers.items():
        key = f"mcp_servers.{name.replace('-', '_')}"

        if isinstance(server, McpHttpServerConfig):
            overrides.config_args.append(f'{key}.type="http"')
            overrides.config_args.append(f'{key}.url="{escape_toml(server.url)}"')

            auth_header = server.headers.get("Authorization") or server.headers.get("authorization")
            bearer = BEARER_PATTERN.match(auth_header) if auth_header else None
            if bearer:
                env_var = f"__HARNESS_MCP_TOKEN_{name.replace('-', '_').upper()}"
                overrides.config_args.append(f'{key}.bearer_token_env_var="{env_var}"')
                overrides.env[env_var] = bearer.group(1)

            for header, value in server.headers.items():
                if bearer and header.lower() == "authorization":
                    continue
                header_key = header.replace("-", "_")
                overrides.config_args.append(
                    f'{key}.http_headers.{header_key}="{escape_toml(value)}"'
                )
        else:
            overrides.config_args.append(f'{key}.type="stdio"')
            overrides.config_args.append(f'{key}.command="{escape_toml(server.command)}"')
            if server.args:
                overrides.config_args.append(f"{key}.args={json.dumps(server.args)}")
            for env_key, value in server.env.items():
                overrides.config_args.append(f'{key}.env.{env_key}="{escape_toml(value)}"')

    return overrides


def build_codex_args(
    query: HarnessQuery,
    *,
    mcp_config_args: list[str] | None = None,
    image_paths: list[str] | None = None,
) -> list[str]:
    """
    Translate a query into `codex` command-line arguments.

    Resumed sessions keep their original sandbox, model and directories, so
    those flags are only sent for new sessions.
    """
    root_args: list[str] = []
    exec_args: list[str] = ["--json"]

    if query.mode == QueryMode.READ_ONLY:
        root_args.extend(["-a", "on-request"])
    elif query.mode == QueryMode.YOLO:
        root_args.append("--yolo")

    if query.resume_session_id:
        root_args.extend(["exec", "resume"])
    else:
        root_args.append("exec")

        if query.mode == QueryMode.READ_ONLY:
            exec_args.extend(["--sandbox", "read-only"])
        if query.model:
            exec_args.extend(["-m", query.model])
        if query.cwd:
            exec_args.extend(["-C", query.cwd])
        for directory in query.additional_directories:
            exec_args.extend(["--add-dir", directory])
        if query.thinking is not None:
            exec_args.extend(["-c", f"model_reasoning_effort={REASONING_EFFORT[query.thinking]}"])
        for arg in mcp_config_args or []:
            exec_args.extend(["-c", arg])
        for path in image_paths or []:
            exec_args.extend(["--image", path])

    if query.fork_session:
        logger.warning("Codex does not support forking sessions in JSON mode; ignoring")
    if query.allowed_tools or query.disallowed_tools:
        logger.debug("Codex has no named tool allow/deny lists; ignoring")

    text = prompt_text(query.prompt)
    system_prompt = query.system_prompt or query.append_system_prompt
    if system_prompt:
        text = f"<system-instructions>\n{system_prompt}\n</system-instructions>\n\n{text}"

    if query.resume_session_id:
        exec_args.extend([query.resume_session_id, text])
    else:
        exec_args.append(text)

    return root_args + exec_args


IMAGE_SUFFIXES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def write_image_parts(query: HarnessQuery) -> list[Path]:
    """Write image prompt parts to temporary files. Caller deletes them."""
    if isinstance(query.prompt, str):
        return []
    paths: list[Path] = []
    for part in query.prompt:
        if not isinstance(part, ImagePart):
            continue
        suffix = IMAGE_SUFFIXES.get(part.media_type, ".img")
        with tempfile.NamedTemporaryFile(
            "wb", prefix="switchboard-image-", suffix=suffix, delete=False
        ) as f:
            f.write(base64.b64decode(part.data))
        paths.append(Path(f.name))
    return paths


# ==============================================================================
# Stream parsing
# ==============================================================================


class CodexStreamParser:
    """Stateful stdout parser for one `codex exec` run."""

    def __init__(self, query: HarnessQuery) -> None:
        self.query = query
        self.last_usage: dict[str, Any] | None = None
        self.started_at = time.monotonic()

    def parse_line(self, line: str) -> list[HarnessEvent]:
        event = json.loads(line)
        if not isinstance(event, dict):
            return []

        event_type = event.get("type")
        if event_type == "thread.started":
            thread_id = event.get("thread_id")
            enriched = {
                **event,
                "session_id": thread_id,
                "cwd": self.query.cwd,
                "model": self.query.model,
                "additional_directories": list(self.query.additional_directories),
            }
            events: list[HarnessEvent] = []
            if thread_id:
                events.append(SessionStartedEvent(session_id=thread_id))
            events.append(MessageEvent(message=enriched))
            return events

        events = [MessageEvent(message=event)]
        if event_type == "turn.completed":
            self.last_usage = event.get("usage") or {}
        elif event_type == "turn.failed":
            error = event.get("error") or {}
            events.append(ErrorEvent(error=error.get("message") or "Turn failed"))
        elif event_type == "error":
            events.append(ErrorEvent(error=event.get("message") or "Unknown Codex error"))
        return events

    def on_exit(self, code: int, stderr: str) -> HarnessEvent | None:
        duration_ms = int((time.monotonic() - self.started_at) * 1000)

        if code == 0 or self.last_usage is not None:
            usage = self.last_usage or {}
            input_tokens = usage.get("input_tokens") or 0
            output_tokens = usage.get("output_tokens") or 0
            cache_read = usage.get("cached_input_tokens")
            return CompleteEvent(
                usage=HarnessUsage(
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cache_read_tokens=cache_read,
                    cost_usd=calculate_cost(
                        self.query.model, input_tokens, output_tokens, cache_read
                    ),
                    duration_ms=duration_ms,
                )
            )

        return ErrorEvent(
            error=stderr.strip() or f"Codex process exited with code {code}",
            code=HarnessErrorCode.PROCESS_CRASHED,
        )


# ==============================================================================
# Adapter
# ==============================================================================


def is_logged_in(output: str) -> bool:
    """Interpret `codex login status` output."""
    lowered = output.lower()
    if "not logged in" in lowered:
        return False
    return "logged in" in lowered


@register_harness(HarnessId.CODEX)
class CodexHarness(BaseHarness):
    """
    OpenAI Codex CLI adapter.

    Features:
    - Session resume via `codex exec resume <id>`
    - Read-only sandbox and on-request approvals
    - MCP servers and client tools via -c overrides
    - Cost estimated from token usage
    """

    harness_id = HarnessId.CODEX
    install_instructions = "Install Codex CLI: npm install -g @openai/codex"
    auth_instructions = "Run `codex login` to authenticate"

    def meta(self) -> HarnessMeta:
        return HarnessMeta(
            id=self.harness_id,
            name="Codex",
            vendor="OpenAI",
            website="https://openai.com/index/introducing-codex/",
        )

    def capabilities(self) -> HarnessCapabilities:
        return HarnessCapabilities(
            supports_system_prompt=False,
            supports_append_system_prompt=False,
            supports_read_only=True,
            supports_mcp=True,
            supports_resume=True,
            supports_fork=False,
            supports_client_tools=True,
            supports_streaming_tokens=True,
            supports_cost_tracking=True,
            supports_named_tools=False,
            supports_images=True,
            thinking_levels=[ThinkingLevel.LOW, ThinkingLevel.MED, ThinkingLevel.HIGH],
        )

    def models(self) -> list[HarnessModel]:
        return [
            HarnessModel(
                id="gpt-5.3-codex",
                label="GPT-5.3 Codex",
                description="Default coding model",
                is_default=True,
            ),
            HarnessModel(
                id="gpt-5.3-codex-spark",
                label="GPT-5.3 Codex Spark",
                description="Faster, lighter variant",
            ),
        ]

    def _resolve_binary(self) -> str | None:
        return resolve_executable(CODEX_BINARY, self.binary_path)

    async def _login_status(self, binary: str) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                "login",
                "status",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.debug(f"Could not run codex login status: {e}")
            return False
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.probes.install_timeout_seconds
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.debug("codex login status timed out")
            return False
        output = stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")
        return is_logged_in(output)

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
        authenticated = await self._login_status(binary)
        return InstallStatus(
            installed=True,
            version=version,
            auth_type="account",
            authenticated=authenticated,
            auth_instructions=None if authenticated else self.auth_instructions,
        )

    async def query(self, query: HarnessQuery) -> AsyncIterator[HarnessEvent]:
        binary = self._resolve_binary()
        if binary is None:
            raise HarnessNotInstalledError(self.harness_id.value, self.install_instructions)

        mcp_servers: dict[str, McpServerConfig] = dict(query.mcp_servers)
        tool_server: ToolServerHandle | None = None
        temp_files: list[Path] = []

        try:
            if query.client_tools:
                tool_server = await start_tool_server(query.client_tools)
                mcp_servers[tool_server.server_name] = tool_server.mcp_server

            env: dict[str, str] = {}
            overrides = build_mcp_overrides(mcp_servers) if mcp_servers else McpOverrides()
            env.update(overrides.env)
            env.update(query.env)

            if not query.resume_session_id:
                temp_files = write_image_parts(query)

            args = build_codex_args(
                query,
                mcp_config_args=overrides.config_args,
                image_paths=[str(p) for p in temp_files],
            )
            parser = CodexStreamParser(query)

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
            for path in temp_files:
                path.unlink(missing_ok=True)

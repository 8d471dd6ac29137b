"""
Pytest configuration and shared fixtures.

Provides an isolated configuration environment, a fake transport for
driving Execution/ExecutionRegistry without a host, and a fake harness
for driving ExecutionHost without spawning processes.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from switchboard.core.config import SwitchboardConfig, clear_cache
from switchboard.core.harness.backend import BaseHarness
from switchboard.core.harness.models import (
    HarnessCapabilities,
    HarnessEvent,
    HarnessId,
    HarnessMeta,
    HarnessModel,
    HarnessQuery,
    InstallStatus,
)
from switchboard.core.session.transport import CommandResult, ReconnectResult

# ==============================================================================
# Environment Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point config lookups at an empty XDG home and drop SWITCHBOARD_* overrides."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in [
        "SWITCHBOARD_HARNESS",
        "SWITCHBOARD_ABORT_TIMEOUT",
        "SWITCHBOARD_BUFFER_RETENTION_MINUTES",
        "SWITCHBOARD_TOOL_CALL_TIMEOUT",
        "SWITCHBOARD_PROBE_TIMEOUT",
        "SWITCHBOARD_DISABLE_TELEMETRY",
    ]:
        monkeypatch.delenv(name, raising=False)
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def config():
    """Default configuration, independent of any files."""
    return SwitchboardConfig()


# ==============================================================================
# Fake Transport
# ==============================================================================


class FakeTransport:
    """
    In-memory ExecutionTransport that records every command it receives.

    Tests push execution-direction envelopes to subscribers with ``emit``.
    """

    def __init__(
        self,
        *,
        start_ok: bool = True,
        start_error: str | None = None,
        start_exception: Exception | None = None,
        abort_delay: float = 0.0,
        abort_exception: Exception | None = None,
    ) -> None:
        self.start_ok = start_ok
        self.start_error = start_error
        self.start_exception = start_exception
        self.abort_delay = abort_delay
        self.abort_exception = abort_exception
        self.history: dict[str, list[Any]] = {}
        self.listeners: list[Callable[[Any], None]] = []
        self.commands: list[Any] = []

    def subscribe(self, listener: Callable[[Any], None]) -> Callable[[], None]:
        self.listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self.listeners:
                self.listeners.remove(listener)

        return unsubscribe

    def emit(self, envelope: Any) -> None:
        for listener in list(self.listeners):
            listener(envelope)

    async def start_query(self, command: Any) -> CommandResult:
        self.commands.append(command)
        if self.start_exception is not None:
            raise self.start_exception
        return CommandResult(ok=self.start_ok, error=self.start_error)

    async def reconnect(self, command: Any) -> ReconnectResult:
        self.commands.append(command)
        if command.execution_id not in self.history:
            return ReconnectResult(found=False)
        return ReconnectResult(found=True, events=list(self.history[command.execution_id]))

    async def abort(self, command: Any) -> CommandResult:
        self.commands.append(command)
        if self.abort_delay:
            await asyncio.sleep(self.abort_delay)
        if self.abort_exception is not None:
            raise self.abort_exception
        return CommandResult(ok=True)

    def send_command(self, command: Any) -> CommandResult:
        self.commands.append(command)
        return CommandResult(ok=True)

    def sent(self, envelope_type: str) -> list[Any]:
        """Commands of one type, in the order they were received."""
        return [c for c in self.commands if c.type == envelope_type]


@pytest.fixture
def transport():
    """Provide a FakeTransport."""
    return FakeTransport()


# ==============================================================================
# Fake Harness
# ==============================================================================

QueryScript = Callable[[HarnessQuery], AsyncIterator[HarnessEvent]]


class FakeHarness(BaseHarness):
    """
    Harness adapter that yields scripted events instead of running a CLI.

    Either pass a fixed ``events`` list or a ``script`` async generator
    function that receives the HarnessQuery (for tests that call client
    tools or wait on the cancellation token).
    """

    harness_id = HarnessId.CLAUDE_CODE

    def __init__(
        self,
        events: list[HarnessEvent] | None = None,
        *,
        script: QueryScript | None = None,
        harness_id: HarnessId = HarnessId.CLAUDE_CODE,
        config: SwitchboardConfig | None = None,
    ) -> None:
        super().__init__(config or SwitchboardConfig())
        self.harness_id = harness_id
        self.events = list(events or [])
        self.script = script
        self.queries: list[HarnessQuery] = []

    def meta(self) -> HarnessMeta:
        return HarnessMeta(
            id=self.harness_id, name="Fake", vendor="Tests", website="https://example.com"
        )

    def capabilities(self) -> HarnessCapabilities:
        return HarnessCapabilities(supports_client_tools=True, supports_resume=True)

    def models(self) -> list[HarnessModel]:
        return [HarnessModel(id="fake-model", label="Fake Model", is_default=True)]

    async def _probe_install_status(self) -> InstallStatus:
        return InstallStatus(
            installed=True, version="1.0.0", auth_type="account", authenticated=True
        )

    async def query(self, query: HarnessQuery) -> AsyncIterator[HarnessEvent]:
        self.queries.append(query)
        if self.script is not None:
            async for event in self.script(query):
                yield event
            return
        for event in self.events:
            yield event


@pytest.fixture
def make_harness():
    """Provide the FakeHarness class for tests that configure their own."""
    return FakeHarness


@pytest.fixture
def make_transport():
    """Provide the FakeTransport class for tests that configure their own."""
    return FakeTransport

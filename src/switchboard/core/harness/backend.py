"""
Harness adapter protocol and registry.

Every backend (Claude Code, Codex, ...) is exposed through the same
operation set. Adapters declare themselves with ``@register_harness`` and are
instantiated into a ``HarnessRegistry`` owned by the host process; callers
dispatch on the harness id rather than on backend-specific fields.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from .cancellation import CancellationToken
from .errors import HarnessError, HarnessNotFoundError
from .models import (
    DefunctSession,
    HarnessCapabilities,
    HarnessEvent,
    HarnessId,
    HarnessMeta,
    HarnessModel,
    HarnessQuery,
    InstallStatus,
    SlashCommand,
)

if TYPE_CHECKING:
    from switchboard.core.config.models import SwitchboardConfig

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@runtime_checkable
class Harness(Protocol):
    """
    Protocol for harness adapters.

    ``meta``, ``capabilities`` and ``models`` are pure data. The discovery
    probes never raise. ``query`` is the only operation with strict
    contracts: it yields the events of one conversational turn and stops
    when the backend process exits or the query's token is cancelled.
    """

    @property
    def id(self) -> HarnessId:
        """Registry key for this adapter."""
        ...

    def meta(self) -> HarnessMeta:
        """Display name, vendor and website."""
        ...

    def capabilities(self) -> HarnessCapabilities:
        """Static feature set of the backend."""
        ...

    def models(self) -> list[HarnessModel]:
        """Models the backend can be asked to use."""
        ...

    async def check_install_status(self) -> InstallStatus:
        """
        Probe whether the backend is installed and authenticated.

        Returns:
            InstallStatus; failures are reported as ``installed=False``
        """
        ...

    async def discover_slash_commands(
        self, cwd: str, token: CancellationToken | None = None
    ) -> list[SlashCommand]:
        """
        List slash commands and skills available in ``cwd``.

        Returns:
            Discovered commands, or an empty list on failure or timeout
        """
        ...

    def query(self, query: HarnessQuery) -> AsyncIterator[HarnessEvent]:
        """
        Run one conversational turn.

        Args:
            query: Prompt, options, client tools and cancellation token

        Returns:
            Lazy, single-pass stream of harness events
        """
        ...

    def defunct_session_id(
        self,
        *,
        stderr: list[str],
        errors: list[str],
        messages: list[dict[str, Any]],
    ) -> DefunctSession | None:
        """Inspect diagnostics from a resumed run for a rejected session."""
        ...


class BaseHarness:
    """
    Shared behaviour for CLI-backed adapters.

    Subclasses implement ``_probe_install_status`` and
    ``_probe_slash_commands``; this class turns their failures into the
    negative results the discovery contract requires.
    """

    harness_id: HarnessId
    install_instructions: str = ""
    auth_instructions: str = ""

    def __init__(self, config: SwitchboardConfig | None = None) -> None:
        if config is None:
            from switchboard.core.config import load_config

            config = load_config()
        self.config = config

    @property
    def id(self) -> HarnessId:
        return self.harness_id

    @property
    def binary_path(self) -> str | None:
        """Binary path override from configuration, if any."""
        defaults = self.config.harnesses.get(self.harness_id.value)
        return defaults.binary_path if defaults else None

    async def check_install_status(self) -> InstallStatus:
        try:
            return await self._probe_install_status()
        except Exception as e:
            logger.warning(f"Install probe for {self.harness_id.value} failed: {e}")
            return InstallStatus(
                installed=False,
                authenticated=False,
                auth_type="none",
                install_instructions=self.install_instructions,
                auth_instructions=self.auth_instructions,
            )

    async def discover_slash_commands(
        self, cwd: str, token: CancellationToken | None = None
    ) -> list[SlashCommand]:
        if token is not None and token.cancelled:
            return []
        probe_token = CancellationToken.linked(token)
        timeout = self.config.probes.slash_command_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._probe_slash_commands(cwd, probe_token), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.debug(f"Slash command discovery for {self.harness_id.value} timed out")
            return []
        except Exception as e:
            logger.debug(f"Slash command discovery for {self.harness_id.value} failed: {e}")
            return []
        finally:
            probe_token.cancel()

    def defunct_session_id(
        self,
        *,
        stderr: list[str],
        errors: list[str],
        messages: list[dict[str, Any]],
    ) -> DefunctSession | None:
        return None

    async def _probe_install_status(self) -> InstallStatus:
        raise NotImplementedError

    async def _probe_slash_commands(
        self, cwd: str, token: CancellationToken
    ) -> list[SlashCommand]:
        return []


# Adapter classes declared with @register_harness
_harness_classes: dict[HarnessId, type[Harness]] = {}


def register_harness(harness_id: HarnessId) -> Callable[[type[_T]], type[_T]]:
    """
    Decorator to register a harness adapter class.

    Usage:
        @register_harness(HarnessId.CODEX)
        class CodexHarness(BaseHarness):
            ...

    Args:
        harness_id: Id the adapter is registered under

    Returns:
        Decorator function
    """

    def decorator(harness_class: type[_T]) -> type[_T]:
        _harness_classes[harness_id] = harness_class  # type: ignore[assignment]
        return harness_class

    return decorator


def registered_harness_ids() -> list[HarnessId]:
    """Ids of every adapter class declared so far."""
    return list(_harness_classes.keys())


class HarnessRegistry:
    """
    Directory of instantiated adapters, keyed by harness id.

    Constructed and owned by the host; nothing in switchboard reaches for a
    global registry.
    """

    def __init__(self) -> None:
        self._harnesses: dict[HarnessId, Harness] = {}

    @classmethod
    def default(cls, config: SwitchboardConfig | None = None) -> HarnessRegistry:
        """Instantiate every adapter declared with ``@register_harness``."""
        # Importing the adapter modules runs their decorators
        from . import claude, codex  # noqa: F401

        registry = cls()
        for harness_class in _harness_classes.values():
            registry.register(harness_class(config))  # type: ignore[call-arg]
        return registry

    def register(self, harness: Harness) -> None:
        """
        Add an adapter.

        Raises:
            HarnessError: If an adapter with the same id is already registered
        """
        if harness.id in self._harnesses:
            raise HarnessError(
                f"Harness '{harness.id.value}' is already registered", harness_id=harness.id.value
            )
        self._harnesses[harness.id] = harness

    def get(self, harness_id: HarnessId | str) -> Harness | None:
        try:
            return self._harnesses.get(HarnessId(harness_id))
        except ValueError:
            return None

    def get_or_raise(self, harness_id: HarnessId | str) -> Harness:
        """
        Look up an adapter.

        Raises:
            HarnessNotFoundError: If no adapter is registered under the id
        """
        harness = self.get(harness_id)
        if harness is None:
            raise HarnessNotFoundError(str(getattr(harness_id, "value", harness_id)))
        return harness

    def has(self, harness_id: HarnessId | str) -> bool:
        return self.get(harness_id) is not None

    def list_harnesses(self) -> list[Harness]:
        return list(self._harnesses.values())

    async def check_all_install_status(self) -> dict[HarnessId, InstallStatus]:
        """Probe every registered adapter concurrently."""
        harnesses = self.list_harnesses()
        statuses = await asyncio.gather(*(h.check_install_status() for h in harnesses))
        return {h.id: status for h, status in zip(harnesses, statuses)}

"""
Execution registry: the consumer's directory of live executions.

The registry is constructed and owned by the host application (one per
process, but never a module global). While open it holds a single
subscription on the transport and routes each inbound envelope to the
execution with the matching id.

Example:
    >>> host = ExecutionHost(HarnessRegistry.default())
    >>> async with ExecutionRegistry(host) as registry:
    ...     execution = await registry.start("Explain this repo", QueryOptions(cwd="."))
    ...     async for message in execution.messages():
    ...         print(message)
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from types import TracebackType
from typing import Any

from switchboard.core.config import SwitchboardConfig, load_config
from switchboard.core.harness.models import ClientTool, QueryMode

from .envelopes import QueryOptions, ReconnectEnvelope, StartQueryEnvelope
from .errors import ExecutionStartError, SessionError
from .execution import Execution
from .transport import ExecutionTransport

logger = logging.getLogger(__name__)


def _append_unique(base: list[str], additions: Iterable[str]) -> list[str]:
    result = list(base)
    for item in additions:
        if item not in result:
            result.append(item)
    return result


class ExecutionRegistry:
    """
    Maps execution ids to Execution handles and routes envelopes to them.

    Args:
        transport: Channel to the execution host
        config: Configuration supplying per-harness defaults and timeouts
    """

    def __init__(
        self,
        transport: ExecutionTransport,
        config: SwitchboardConfig | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or load_config()
        self._executions: dict[str, Execution] = {}
        self._unsubscribe: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    def open(self) -> None:
        """Subscribe to the transport. Calling open twice is a no-op."""
        if self._unsubscribe is None:
            self._unsubscribe = self._transport.subscribe(self._route)

    def close(self) -> None:
        """Unsubscribe and forget every execution. Backends keep running."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for execution in self._executions.values():
            execution.router.cancel_pending()
        self._executions.clear()

    async def __aenter__(self) -> ExecutionRegistry:
        self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self.is_open:
            raise SessionError("ExecutionRegistry is not open")

    def _route(self, envelope: Any) -> None:
        execution = self._executions.get(envelope.execution_id)
        if execution is None:
            logger.debug(
                f"Dropping {envelope.type} envelope for unknown execution {envelope.execution_id}"
            )
            return
        execution.ingest(envelope)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> Execution | None:
        return self._executions.get(execution_id)

    def executions(self) -> list[Execution]:
        return list(self._executions.values())

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._executions

    def __len__(self) -> int:
        return len(self._executions)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def merge_options(
        self, options: QueryOptions | None, tools: Iterable[ClientTool] | None = None
    ) -> QueryOptions:
        """
        Layer caller options over the configured defaults for their harness.

        The default model applies only when the caller chose none. Caller
        tool allow/deny lists are appended to the baselines, and read-only
        mode adds its extra denials. Definitions of ``tools`` are added to
        ``client_tools``.
        """
        options = options or QueryOptions(harness_id=self._config.default_harness)
        defaults = self._config.harness_defaults(options.harness_id.value)

        disallowed = _append_unique(defaults.disallowed_tools, options.disallowed_tools)
        if options.mode == QueryMode.READ_ONLY:
            disallowed = _append_unique(disallowed, defaults.read_only_disallowed_tools)

        client_tools = list(options.client_tools)
        known = {definition.name for definition in client_tools}
        for tool in tools or []:
            if tool.name not in known:
                client_tools.append(tool.definition)
                known.add(tool.name)

        return options.model_copy(
            update={
                "model": options.model or defaults.model,
                "allowed_tools": _append_unique(defaults.allowed_tools, options.allowed_tools),
                "disallowed_tools": disallowed,
                "client_tools": client_tools,
            }
        )

    def _create(
        self,
        execution_id: str,
        options: QueryOptions | None,
        tools: Iterable[ClientTool] | None,
    ) -> Execution:
        execution = Execution(
            execution_id,
            options.harness_id if options else None,
            self._transport,
            abort_timeout=self._config.execution.abort_timeout_seconds,
            tools=tools,
        )
        self._executions[execution_id] = execution
        return execution

    async def start(
        self,
        prompt: str,
        options: QueryOptions | None = None,
        *,
        tools: Iterable[ClientTool] | None = None,
        execution_id: str | None = None,
    ) -> Execution:
        """
        Start a new execution.

        Args:
            prompt: User prompt for the harness
            options: Caller options, merged over per-harness defaults
            tools: Client tools the backend may call during this execution
            execution_id: Id to use; generated if omitted

        Returns:
            The registered Execution

        Raises:
            ExecutionStartError: If the host refuses or fails to start it.
                Nothing is left registered in that case.
        """
        self._require_open()
        tools = list(tools or [])
        merged = self.merge_options(options, tools)
        execution_id = execution_id or str(uuid.uuid4())
        if execution_id in self._executions:
            raise ExecutionStartError(execution_id, "execution id already registered")

        execution = self._create(execution_id, merged, tools)
        command = StartQueryEnvelope(execution_id=execution_id, prompt=prompt, options=merged)
        try:
            result = await self._transport.start_query(command)
        except Exception as e:
            self._executions.pop(execution_id, None)
            raise ExecutionStartError(execution_id, str(e)) from e

        if not result.ok:
            self._executions.pop(execution_id, None)
            raise ExecutionStartError(execution_id, result.error or "host refused to start")

        logger.debug(f"Started execution {execution_id} on {merged.harness_id.value}")
        return execution

    async def attach(
        self,
        execution_id: str,
        tools: Iterable[ClientTool] | None = None,
    ) -> Execution | None:
        """
        Re-attach to an execution after the consumer restarted.

        Buffered history is fetched from the host and replayed through the
        normal ingestion path. Tool calls still waiting for an answer are
        answered by ``tools`` or, for tools without a handler, by the
        unavailable fallback.

        Returns:
            The Execution, or None if the host has no record of it. No entry
            is left behind when None is returned.
        """
        self._require_open()
        existing = self._executions.get(execution_id)
        if existing is not None:
            execution = existing
            execution.router.register_all(tools or [])
        else:
            execution = self._create(execution_id, None, tools)

        try:
            result = await self._transport.reconnect(ReconnectEnvelope(execution_id=execution_id))
        except Exception:
            if existing is None:
                self._executions.pop(execution_id, None)
            raise

        if not result.found:
            if existing is None:
                self._executions.pop(execution_id, None)
            logger.debug(f"Host has no record of execution {execution_id}")
            return None

        accepted = execution.replay(result.events)
        logger.debug(f"Replayed {accepted} envelopes into execution {execution_id}")
        return execution

    def cleanup(self, execution_id: str) -> bool:
        """
        Forget an execution. The backend is not stopped; use ``abort`` for that.

        Returns:
            True if an entry was removed
        """
        return self._executions.pop(execution_id, None) is not None

    def clear_buffer(self, execution_id: str) -> None:
        """Tell the host the execution's history is stored elsewhere."""
        execution = self._executions.get(execution_id)
        if execution is not None:
            execution.clear_buffer()

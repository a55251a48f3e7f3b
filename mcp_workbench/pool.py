from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import mcp.types as types

from mcp_workbench.config import ServerSpec, ToolboxDefinition, WorkbenchConfig
from mcp_workbench.connection import DEFAULT_CONNECT_TIMEOUT_S, Connection, describe_exception
from mcp_workbench.errors import (
	ConnectionFailedError,
	InvalidToolIdentifierError,
	ServerNotFoundError,
	ToolboxNotConfiguredError,
	ToolboxNotOpenError,
	ToolNotFoundError,
)

logger = logging.getLogger('mcp-workbench.pool')

DEFAULT_SHUTDOWN_TIMEOUT_S = 5.0


class ServerConnection(Protocol):
	toolbox: str
	server: str
	tools: list[types.Tool]

	async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> types.CallToolResult: ...

	async def close(self) -> None: ...


Connector = Callable[..., Awaitable[ServerConnection]]


@dataclass(frozen=True)
class ToolIdentifier:
	toolbox: str
	server: str
	tool: str

	def __post_init__(self) -> None:
		for name in ('toolbox', 'server', 'tool'):
			value = getattr(self, name)
			if not isinstance(value, str) or not value:
				raise InvalidToolIdentifierError(name)


@dataclass(frozen=True)
class ToolDescriptor:
	toolbox: str
	server: str
	tool: types.Tool

	@property
	def name(self) -> str:
		return self.tool.name

	@property
	def identifier(self) -> ToolIdentifier:
		return ToolIdentifier(self.toolbox, self.server, self.tool.name)

	def to_dict(self) -> dict[str, Any]:
		out = self.tool.model_dump(mode='json', by_alias=True, exclude_none=True)
		out['server'] = self.server
		out['toolbox'] = self.toolbox
		return out


@dataclass(frozen=True)
class ToolboxSnapshot:
	toolbox: str
	description: str
	servers_connected: int
	tools: list[ToolDescriptor]

	def to_dict(self) -> dict[str, Any]:
		return {
			'toolbox': self.toolbox,
			'description': self.description,
			'servers_connected': self.servers_connected,
			'tools': [t.to_dict() for t in self.tools],
		}


@dataclass
class OpenToolbox:
	name: str
	definition: ToolboxDefinition
	connections: dict[str, ServerConnection]
	opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

	def snapshot(self) -> ToolboxSnapshot:
		tools: list[ToolDescriptor] = []
		# Definition order first; the connect race must not leak into the listing.
		for server_name in self.definition.servers:
			conn = self.connections[server_name]
			tools.extend(ToolDescriptor(self.name, server_name, t) for t in conn.tools)
		return ToolboxSnapshot(
			toolbox=self.name,
			description=self.definition.description,
			servers_connected=len(self.connections),
			tools=tools,
		)


def _succeeded(tasks: list[asyncio.Task[ServerConnection]]) -> list[ServerConnection]:
	return [t.result() for t in tasks if t.done() and not t.cancelled() and t.exception() is None]


async def _connect_stdio(toolbox: str, spec: ServerSpec, *, timeout_s: float) -> ServerConnection:
	return await Connection.open(toolbox, spec, timeout_s=timeout_s)


class ConnectionPool:
	"""Open toolboxes and their downstream connections, keyed by (toolbox, server).

	All mutation happens on the event loop between suspension points, so the two
	maps need no lock. The only teardown path is ``shutdown``.
	"""

	def __init__(
		self,
		config: WorkbenchConfig,
		*,
		connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
		connector: Connector | None = None,
	) -> None:
		self.config = config
		self.connect_timeout_s = connect_timeout_s
		self._connector: Connector = connector or _connect_stdio
		self._toolboxes: dict[str, OpenToolbox] = {}
		self._opening: dict[str, asyncio.Task[OpenToolbox]] = {}

	def is_open(self, name: str) -> bool:
		return name in self._toolboxes

	def open_toolboxes(self) -> list[str]:
		return list(self._toolboxes)

	def get_open_toolbox(self, name: str) -> OpenToolbox | None:
		return self._toolboxes.get(name)

	async def open(self, name: str) -> ToolboxSnapshot:
		existing = self._toolboxes.get(name)
		if existing is not None:
			return existing.snapshot()

		definition = self.config.toolboxes.get(name)
		if definition is None:
			raise ToolboxNotConfiguredError(name, self.config.toolbox_names())

		task = self._opening.get(name)
		if task is None:
			task = asyncio.create_task(self._open_toolbox(definition), name=f'workbench-open:{name}')
			self._opening[name] = task
			task.add_done_callback(self._forget_opening)
		toolbox = await asyncio.shield(task)
		return toolbox.snapshot()

	def _forget_opening(self, task: asyncio.Task[OpenToolbox]) -> None:
		for name, pending in list(self._opening.items()):
			if pending is task:
				del self._opening[name]
		if not task.cancelled():
			# Every waiter may have gone away; mark the outcome as observed.
			task.exception()

	async def _open_toolbox(self, definition: ToolboxDefinition) -> OpenToolbox:
		started = time.monotonic()
		server_names = list(definition.servers)
		attempts = [
			asyncio.create_task(
				self._connector(definition.name, definition.servers[s], timeout_s=self.connect_timeout_s),
				name=f'workbench-connect:{definition.name}/{s}',
			)
			for s in server_names
		]
		try:
			await asyncio.wait(attempts)
		except asyncio.CancelledError:
			for task in attempts:
				task.cancel()
			await asyncio.wait(attempts)
			await asyncio.gather(*(self._close_quietly(c) for c in _succeeded(attempts)))
			raise

		connections: dict[str, ServerConnection] = {}
		failure: tuple[str, BaseException] | None = None
		for server_name, task in zip(server_names, attempts):
			exc = asyncio.CancelledError() if task.cancelled() else task.exception()
			if exc is not None:
				if failure is None:
					failure = (server_name, exc)
				continue
			connections[server_name] = task.result()

		if failure is not None:
			server_name, exc = failure
			logger.error(
				"Opening toolbox '%s' failed on server '%s': %s; rolling back %d connection(s)",
				definition.name,
				server_name,
				describe_exception(exc),
				len(connections),
			)
			await asyncio.gather(*(self._close_quietly(c) for c in connections.values()))
			raise ConnectionFailedError(definition.name, server_name, describe_exception(exc)) from exc

		toolbox = OpenToolbox(name=definition.name, definition=definition, connections=connections)
		self._toolboxes[definition.name] = toolbox
		logger.info(
			"Opened toolbox '%s': %d server(s), %d tool(s) in %.2fs",
			definition.name,
			len(connections),
			sum(len(c.tools) for c in connections.values()),
			time.monotonic() - started,
		)
		return toolbox

	async def _close_quietly(self, conn: ServerConnection) -> None:
		try:
			await conn.close()
		except Exception:
			logger.warning(
				"Error closing server '%s' (toolbox '%s')",
				conn.server,
				conn.toolbox,
				exc_info=True,
			)

	def resolve(self, identifier: ToolIdentifier) -> tuple[ServerConnection, types.Tool]:
		toolbox = self._toolboxes.get(identifier.toolbox)
		if toolbox is None:
			raise ToolboxNotOpenError(identifier.toolbox)

		conn = toolbox.connections.get(identifier.server)
		if conn is None:
			raise ServerNotFoundError(identifier.toolbox, identifier.server)

		for tool in conn.tools:
			if tool.name == identifier.tool:
				return conn, tool
		raise ToolNotFoundError(identifier.toolbox, identifier.server, identifier.tool)

	async def invoke(self, identifier: ToolIdentifier, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
		conn, tool = self.resolve(identifier)
		logger.debug("Calling '%s' on server '%s' (toolbox '%s')", tool.name, conn.server, conn.toolbox)
		return await conn.call_tool(tool.name, arguments or {})

	async def shutdown(self, timeout_s: float = DEFAULT_SHUTDOWN_TIMEOUT_S) -> None:
		deadline = time.monotonic() + timeout_s

		opening = list(self._opening.values())
		for task in opening:
			task.cancel()
		if opening:
			await asyncio.wait(opening, timeout=max(0.0, deadline - time.monotonic()))

		toolboxes = list(self._toolboxes.values())
		self._toolboxes.clear()
		closers = [
			asyncio.create_task(self._close_quietly(conn), name=f'workbench-close:{tb.name}/{server}')
			for tb in toolboxes
			for server, conn in tb.connections.items()
		]
		if not closers:
			return

		logger.info('Shutting down %d connection(s) across %d toolbox(es)', len(closers), len(toolboxes))
		_, pending = await asyncio.wait(closers, timeout=max(0.0, deadline - time.monotonic()))
		for task in pending:
			logger.warning('Shutdown timeout of %.1fs exceeded; abandoning %s', timeout_s, task.get_name())
			task.cancel()
		if pending:
			await asyncio.wait(pending, timeout=1.0)

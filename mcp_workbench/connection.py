from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any

import mcp.types as types
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from mcp_workbench.config import ServerSpec

logger = logging.getLogger('mcp-workbench.connection')

DEFAULT_CONNECT_TIMEOUT_S = 30.0
DEFAULT_CLOSE_TIMEOUT_S = 5.0


def describe_exception(exc: BaseException) -> str:
	# anyio task groups wrap the real failure; report the innermost one.
	while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
		exc = exc.exceptions[0]
	if isinstance(exc, TimeoutError):
		return 'timed out waiting for the server to initialize and list its tools'
	text = str(exc).strip()
	return f'{type(exc).__name__}: {text}' if text else type(exc).__name__


async def _list_all_tools(session: ClientSession) -> list[types.Tool]:
	result = await session.list_tools()
	tools = list(result.tools)
	while result.nextCursor:
		result = await session.list_tools(cursor=result.nextCursor)
		tools.extend(result.tools)
	return tools


class Connection:
	"""One downstream MCP server process bound to a (toolbox, server) pair.

	The stdio transport and client session are owned by a dedicated task so the
	SDK's cancel scopes are entered and left by the same task. Use
	``Connection.open`` to get a ready connection; it never returns a half-open one.
	"""

	def __init__(self, *, toolbox: str, spec: ServerSpec) -> None:
		self.toolbox = toolbox
		self.server = spec.name
		self.spec = spec
		self.tools: list[types.Tool] = []
		self.connected_at: datetime | None = None
		self._session: ClientSession | None = None
		self._task: asyncio.Task[None] | None = None
		self._ready: asyncio.Future[None] | None = None
		self._stop = asyncio.Event()

	@classmethod
	async def open(
		cls,
		toolbox: str,
		spec: ServerSpec,
		*,
		timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
	) -> Connection:
		conn = cls(toolbox=toolbox, spec=spec)
		await conn._start(timeout_s)
		return conn

	@property
	def is_ready(self) -> bool:
		return self._session is not None

	def server_parameters(self) -> StdioServerParameters:
		env = os.environ.copy()
		env.update(self.spec.env)
		return StdioServerParameters(
			command=self.spec.command,
			args=list(self.spec.args),
			env=env,
			cwd=self.spec.cwd,
		)

	async def _start(self, timeout_s: float) -> None:
		logger.info(
			"Connecting to server '%s' (toolbox '%s'): command=%s args=%s env keys=%s",
			self.server,
			self.toolbox,
			self.spec.command,
			list(self.spec.args),
			sorted(self.spec.env) or '(none)',
		)
		self._ready = asyncio.get_running_loop().create_future()
		self._task = asyncio.create_task(self._run(), name=f'workbench:{self.toolbox}/{self.server}')
		try:
			await asyncio.wait_for(asyncio.shield(self._ready), timeout=timeout_s)
		except BaseException:
			await self.close()
			raise
		logger.info(
			"Connected to server '%s' (toolbox '%s'): %d tools",
			self.server,
			self.toolbox,
			len(self.tools),
		)

	async def _run(self) -> None:
		assert self._ready is not None
		try:
			async with stdio_client(self.server_parameters()) as (read_stream, write_stream):
				async with ClientSession(read_stream, write_stream) as session:
					await session.initialize()
					discovered = await _list_all_tools(session)
					self.tools = [t for t in discovered if self.spec.allows(t.name)]
					self.connected_at = datetime.now(timezone.utc)
					self._session = session
					if not self._ready.done():
						self._ready.set_result(None)
					await self._stop.wait()
		except Exception as exc:
			if not self._ready.done():
				self._ready.set_exception(exc)
			else:
				logger.warning("Server '%s' (toolbox '%s') stopped: %s", self.server, self.toolbox, describe_exception(exc))
		finally:
			self._session = None

	async def call_tool(self, name: str, arguments: dict[str, Any] | None) -> types.CallToolResult:
		session = self._session
		if session is None:
			raise RuntimeError(f"Server '{self.server}' (toolbox '{self.toolbox}') is not connected")
		return await session.call_tool(name, arguments or {})

	async def close(self, timeout_s: float = DEFAULT_CLOSE_TIMEOUT_S) -> None:
		task = self._task
		if task is None:
			return
		self._task = None
		self._stop.set()
		if task.done():
			return
		if self._session is None:
			# Still handshaking: nothing waits on the stop event yet.
			task.cancel()
		done, _ = await asyncio.wait({task}, timeout=timeout_s)
		if not done:
			logger.warning("Server '%s' (toolbox '%s') did not stop in %.1fs; cancelling", self.server, self.toolbox, timeout_s)
			task.cancel()
			await asyncio.wait({task}, timeout=1.0)
		logger.info("Closed server '%s' (toolbox '%s')", self.server, self.toolbox)

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import Any

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from pydantic import ValidationError

from mcp_workbench import __version__
from mcp_workbench.config import WorkbenchConfig
from mcp_workbench.connection import describe_exception
from mcp_workbench.errors import WorkbenchError
from mcp_workbench.pool import DEFAULT_SHUTDOWN_TIMEOUT_S, ConnectionPool
from mcp_workbench.schemas import (
	OpenToolboxRequest,
	UseToolRequest,
	format_validation_error,
	input_schema,
)

logger = logging.getLogger('mcp-workbench')

SERVER_NAME = 'mcp-workbench'

OPEN_TOOLBOX = 'open_toolbox'
USE_TOOL = 'use_tool'

_EXAMPLE_INVOCATION = {
	'tool': {'toolbox': 'toolbox-name', 'server': 'server-name', 'tool': 'tool-name'},
	'arguments': {},
}

_OPEN_TOOLBOX_DESCRIPTION = """Open a toolbox and discover its available tools.

Connects to every MCP server configured in the toolbox (in parallel), lists
their tools, applies the configured tool filters and returns the complete
tool list with schemas. Opening an already open toolbox returns the cached
information without reconnecting.

Returns JSON: {"toolbox", "description", "servers_connected", "tools": [
  {"name", "server", "toolbox", "description", "inputSchema", "annotations"}]}

Use the "toolbox", "server" and "name" of a tool as the identifier for use_tool."""

_USE_TOOL_DESCRIPTION = """Execute a tool from an opened toolbox.

Address the tool with a structured identifier {"toolbox", "server", "tool"}
(all required, non-empty) and pass its arguments as an object. The request is
forwarded to the downstream MCP server and its response is returned as is.

Example:
  {"tool": {"toolbox": "dev", "server": "filesystem", "tool": "read_file"},
   "arguments": {"path": "/etc/hosts"}}"""


def render_instructions(config: WorkbenchConfig) -> str:
	if not config.toolboxes:
		return '\n'.join(
			[
				'No toolboxes configured.',
				'',
				'To configure toolboxes, add them to the workbench configuration file',
				'(path given by --config or the WORKBENCH_CONFIG environment variable).',
			]
		)

	lines = ['# Available Toolboxes', '']
	for name, toolbox in config.toolboxes.items():
		count = len(toolbox.servers)
		noun = 'server' if count == 1 else 'servers'
		lines += [f'## {name} ({count} {noun})', '', toolbox.description, '']
	lines += [
		f'Use `{OPEN_TOOLBOX}` to connect to a toolbox, then `{USE_TOOL}` to invoke its tools.',
		'',
		'Example tool invocation:',
		'',
		'```json',
		json.dumps(_EXAMPLE_INVOCATION, indent=2),
		'```',
	]
	return '\n'.join(lines)


def _error_result(text: str) -> types.CallToolResult:
	return types.CallToolResult(content=[types.TextContent(type='text', text=f'Error: {text}')], isError=True)


def _env_float(name: str, default: float) -> float:
	raw = (os.getenv(name) or '').strip()
	if not raw:
		return default
	try:
		return float(raw)
	except ValueError:
		logger.warning('Ignoring %s=%r (not a number); using %s', name, raw, default)
		return default


class WorkbenchServer:
	def __init__(
		self,
		config: WorkbenchConfig,
		pool: ConnectionPool | None = None,
		*,
		shutdown_timeout_s: float = DEFAULT_SHUTDOWN_TIMEOUT_S,
	) -> None:
		self.config = config
		self.pool = pool if pool is not None else ConnectionPool(config)
		self.shutdown_timeout_s = shutdown_timeout_s
		self.server = Server(SERVER_NAME)
		self._register_handlers()

	def instructions(self) -> str:
		return render_instructions(self.config)

	def tools(self) -> list[types.Tool]:
		return [
			types.Tool(
				name=OPEN_TOOLBOX,
				title='Open a Toolbox',
				description=_OPEN_TOOLBOX_DESCRIPTION,
				inputSchema=input_schema(OpenToolboxRequest),
				annotations=types.ToolAnnotations(
					readOnlyHint=False,
					destructiveHint=False,
					idempotentHint=True,
					openWorldHint=True,
				),
			),
			types.Tool(
				name=USE_TOOL,
				title='Use a Tool from a Toolbox',
				description=_USE_TOOL_DESCRIPTION,
				inputSchema=input_schema(UseToolRequest),
				annotations=types.ToolAnnotations(
					readOnlyHint=False,
					destructiveHint=False,
					idempotentHint=False,
					openWorldHint=True,
				),
			),
		]

	async def open_toolbox(self, arguments: dict[str, Any] | None) -> types.CallToolResult:
		try:
			request = OpenToolboxRequest.model_validate(arguments or {})
		except ValidationError as exc:
			return _error_result(f'Invalid open_toolbox parameters: {format_validation_error(exc)}')

		try:
			snapshot = await self.pool.open(request.toolbox)
		except WorkbenchError as exc:
			return _error_result(f"Error opening toolbox '{request.toolbox}': {exc}")

		payload = snapshot.to_dict()
		return types.CallToolResult(
			content=[types.TextContent(type='text', text=json.dumps(payload, ensure_ascii=False, indent=2))],
			structuredContent=payload,
		)

	async def use_tool(self, arguments: dict[str, Any] | None) -> types.CallToolResult:
		try:
			request = UseToolRequest.model_validate(arguments or {})
			identifier = request.tool.to_identifier()
		except ValidationError as exc:
			return _error_result(f'Invalid tool invocation parameters: {format_validation_error(exc)}')
		except WorkbenchError as exc:
			return _error_result(f'Invalid tool invocation parameters: {exc}')

		try:
			return await self.pool.invoke(identifier, request.arguments)
		except WorkbenchError as exc:
			return _error_result(str(exc))
		except Exception as exc:
			logger.error(
				"Tool '%s' failed in server '%s' (toolbox '%s')",
				identifier.tool,
				identifier.server,
				identifier.toolbox,
				exc_info=True,
			)
			return _error_result(
				f"Error executing tool '{identifier.tool}' in server '{identifier.server}' "
				f"(toolbox '{identifier.toolbox}'): {describe_exception(exc)}"
			)

	def _register_handlers(self) -> None:
		@self.server.list_tools()
		async def handle_list_tools() -> list[types.Tool]:
			return self.tools()

		@self.server.call_tool(validate_input=False)
		async def handle_call_tool(name: str, arguments: dict[str, Any] | None) -> types.CallToolResult:
			if name == OPEN_TOOLBOX:
				return await self.open_toolbox(arguments)
			if name == USE_TOOL:
				return await self.use_tool(arguments)
			return _error_result(f'Unknown tool: {name}. Available tools: {OPEN_TOOLBOX}, {USE_TOOL}')

	def initialization_options(self) -> InitializationOptions:
		return InitializationOptions(
			server_name=SERVER_NAME,
			server_version=__version__,
			capabilities=self.server.get_capabilities(
				notification_options=NotificationOptions(),
				experimental_capabilities={},
			),
			instructions=self.instructions(),
		)

	async def shutdown(self) -> None:
		logger.info('Shutting down MCP Workbench')
		await self.pool.shutdown(self.shutdown_timeout_s)

	async def _serve(self) -> None:
		async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
			await self.server.run(read_stream, write_stream, self.initialization_options())

	def _install_signal_handlers(self, stop: asyncio.Event) -> None:
		loop = asyncio.get_running_loop()
		for sig in (signal.SIGINT, signal.SIGTERM):
			try:
				loop.add_signal_handler(sig, stop.set)
			except (NotImplementedError, RuntimeError):
				continue

	async def run(self) -> bool:
		"""Serve on stdio until stdin closes or a termination signal arrives.

		Returns True when stopped by a signal. The stdin reader may then still be
		parked in a worker thread, so the caller should exit the process directly.
		"""
		stop = asyncio.Event()
		self._install_signal_handlers(stop)
		serve = asyncio.create_task(self._serve(), name='workbench-serve')
		stopped = asyncio.create_task(stop.wait(), name='workbench-stop')
		try:
			await asyncio.wait({serve, stopped}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			stopped.cancel()
			if not serve.done():
				serve.cancel()
			try:
				await asyncio.wait_for(self.shutdown(), timeout=self.shutdown_timeout_s + 1.0)
			except TimeoutError:
				logger.warning('Shutdown did not finish within %.1fs', self.shutdown_timeout_s)

		if serve.done() and not serve.cancelled() and serve.exception() is not None:
			raise serve.exception()
		return stop.is_set()


def shutdown_timeout_from_env() -> float:
	return _env_float('WORKBENCH_SHUTDOWN_TIMEOUT_S', DEFAULT_SHUTDOWN_TIMEOUT_S)


def connect_timeout_from_env(default: float) -> float:
	return _env_float('WORKBENCH_CONNECT_TIMEOUT_S', default)

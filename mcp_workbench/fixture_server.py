from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import mcp.server.stdio
import mcp.types as types
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions

logging.basicConfig(
	stream=sys.stderr,
	level=logging.WARNING,
	format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
	force=True,
)
logger = logging.getLogger("mcp-workbench-fixture")

logging.getLogger("mcp").setLevel(logging.ERROR)
logging.getLogger("mcp").propagate = False

# Tools with behaviour of their own; any other name echoes its call back.
_READ_FILE_SCHEMA = {
	"type": "object",
	"properties": {"path": {"type": "string", "description": "File to read."}},
	"required": ["path"],
}
_ECHO_SCHEMA = {"type": "object", "additionalProperties": True}


def _tool(name: str, label: str) -> types.Tool:
	if name == "read_file":
		return types.Tool(name=name, description=f"Read a text file ({label}).", inputSchema=_READ_FILE_SCHEMA)
	if name == "fail":
		return types.Tool(name=name, description=f"Always fails ({label}).", inputSchema=_ECHO_SCHEMA)
	return types.Tool(
		name=name,
		description=f"Echo the call back with the server label ({label}).",
		inputSchema=_ECHO_SCHEMA,
		annotations=types.ToolAnnotations(readOnlyHint=True),
	)


class FixtureServer:
	def __init__(self, *, label: str, tool_names: list[str]) -> None:
		self.label = label
		self.tool_names = tool_names
		self.server = Server(f"fixture-{label}")
		self._setup_handlers()

	def _setup_handlers(self) -> None:
		@self.server.list_tools()
		async def handle_list_tools() -> list[types.Tool]:
			return [_tool(n, self.label) for n in self.tool_names]

		@self.server.call_tool()
		async def handle_call_tool(name: str, arguments: dict[str, Any] | None) -> list[types.Content]:
			args = arguments or {}
			if name not in self.tool_names:
				raise ValueError(f"Unknown tool: {name}")
			if name == "fail":
				raise RuntimeError(f"fixture failure from {self.label}")
			if name == "read_file":
				text = Path(str(args["path"])).read_text(encoding="utf-8")
				return [types.TextContent(type="text", text=text)]
			payload = {
				"label": self.label,
				"tool": name,
				"arguments": args,
				"pid": os.getpid(),
				"mark": os.getenv("FIXTURE_MARK"),
			}
			return [types.TextContent(type="text", text=json.dumps(payload, ensure_ascii=False))]

	async def run(self) -> None:
		async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
			await self.server.run(
				read_stream,
				write_stream,
				InitializationOptions(
					server_name=f"fixture-{self.label}",
					server_version="0.1.0",
					capabilities=self.server.get_capabilities(
						notification_options=NotificationOptions(),
						experimental_capabilities={},
					),
				),
			)


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="Downstream MCP server used by the workbench tests.")
	parser.add_argument("--label", required=True, help="Returned in every echo so callers can tell servers apart")
	parser.add_argument("--tools", default="echo", help="Comma separated tool names to advertise")
	parser.add_argument("--pid-file", default=None, help="Write this process id to the given file")
	args = parser.parse_args(argv)

	if args.pid_file:
		Path(args.pid_file).write_text(str(os.getpid()), encoding="utf-8")

	tool_names = [t.strip() for t in args.tools.split(",") if t.strip()]
	asyncio.run(FixtureServer(label=args.label, tool_names=tool_names).run())
	return 0


if __name__ == "__main__":
	raise SystemExit(main())

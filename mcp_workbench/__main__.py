from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from mcp_workbench.config import default_config_path, load_config
from mcp_workbench.connection import DEFAULT_CONNECT_TIMEOUT_S
from mcp_workbench.errors import ConfigError
from mcp_workbench.pool import ConnectionPool
from mcp_workbench.server import (
	WorkbenchServer,
	connect_timeout_from_env,
	render_instructions,
	shutdown_timeout_from_env,
)

logger = logging.getLogger('mcp-workbench')


def _configure_logging(level_name: str | None) -> None:
	level_name = (level_name or os.getenv('WORKBENCH_LOG_LEVEL') or 'WARNING').strip().upper()
	logging.basicConfig(
		stream=sys.stderr,
		level=getattr(logging, level_name, logging.WARNING),
		format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
		force=True,
	)
	# Keep SDK chatter out of the way; stdout carries the MCP stream.
	logging.getLogger('mcp').setLevel(logging.ERROR)
	logging.getLogger('mcp').propagate = False


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
	parser = argparse.ArgumentParser(
		prog='mcp-workbench',
		description='MCP server that groups downstream MCP servers into toolboxes.',
	)
	parser.add_argument(
		'--config',
		default=None,
		help='Path to the workbench JSON config (default: $WORKBENCH_CONFIG or ./workbench-config.json)',
	)
	parser.add_argument('--log-level', default=None, help='Logging level (default: $WORKBENCH_LOG_LEVEL or WARNING)')
	parser.add_argument('--check', action='store_true', help='Validate the config, print the toolbox listing and exit')
	return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
	args = _parse_args(argv)
	_configure_logging(args.log_level)

	config_path = args.config or str(default_config_path())
	try:
		config = load_config(config_path)
	except ConfigError as exc:
		print(f'Failed to start MCP Workbench: {exc}', file=sys.stderr)
		print(f'\nCurrent config path: {config_path}', file=sys.stderr)
		return 1

	if args.check:
		print(render_instructions(config))
		return 0

	pool = ConnectionPool(config, connect_timeout_s=connect_timeout_from_env(DEFAULT_CONNECT_TIMEOUT_S))
	server = WorkbenchServer(config, pool, shutdown_timeout_s=shutdown_timeout_from_env())
	logger.info('MCP Workbench running via stdio (toolboxes: %s)', ', '.join(config.toolbox_names()) or 'none')

	asyncio.run(_serve(server))
	return 0


async def _serve(server: WorkbenchServer) -> None:
	if await server.run():
		# The stdin reader thread cannot be interrupted; leave before asyncio.run waits on it.
		logging.shutdown()
		sys.stderr.flush()
		os._exit(0)


if __name__ == '__main__':
	raise SystemExit(main())

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from mcp_workbench.env_expander import expand_env_vars
from mcp_workbench.errors import ConfigError, EnvExpansionError

logger = logging.getLogger('mcp-workbench.config')

DEFAULT_CONFIG_PATH = './workbench-config.json'
SUPPORTED_TRANSPORTS = ('stdio',)


@dataclass(frozen=True)
class ServerSpec:
	name: str
	command: str
	args: tuple[str, ...] = ()
	env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
	# None means every discovered tool is exposed.
	tool_filter: frozenset[str] | None = None
	transport: str = 'stdio'
	cwd: str | None = None

	def allows(self, tool_name: str) -> bool:
		return self.tool_filter is None or tool_name in self.tool_filter


@dataclass(frozen=True)
class ToolboxDefinition:
	name: str
	description: str
	servers: Mapping[str, ServerSpec]


@dataclass(frozen=True)
class WorkbenchConfig:
	toolboxes: Mapping[str, ToolboxDefinition]
	source: str | None = None

	def toolbox_names(self) -> list[str]:
		return list(self.toolboxes)


def default_config_path() -> Path:
	return Path((os.getenv('WORKBENCH_CONFIG') or '').strip() or DEFAULT_CONFIG_PATH).expanduser()


def load_config(path: str | Path, environ: Mapping[str, str] | None = None) -> WorkbenchConfig:
	config_path = Path(path)
	try:
		raw_text = config_path.read_text(encoding='utf-8')
	except OSError as exc:
		raise ConfigError(f'Cannot read configuration file {config_path}: {exc}') from exc

	try:
		raw = json.loads(raw_text)
	except json.JSONDecodeError as exc:
		raise ConfigError(f'Invalid JSON in config file {config_path}: {exc}') from exc

	try:
		expanded = expand_env_vars(raw, environ=environ)
	except EnvExpansionError as exc:
		raise EnvExpansionError(exc.variable, exc.location, f'{exc.reason} (in {config_path})') from exc

	config = parse_config(expanded, source=str(config_path))
	logger.info('Loaded configuration from %s: toolboxes=%s', config_path, config.toolbox_names())
	return config


def parse_config(data: Any, *, source: str | None = None) -> WorkbenchConfig:
	if not isinstance(data, dict):
		raise ConfigError('Configuration root must be a JSON object')
	toolboxes_raw = data.get('toolboxes')
	if not isinstance(toolboxes_raw, dict):
		raise ConfigError("Configuration must have a 'toolboxes' object")

	toolboxes: dict[str, ToolboxDefinition] = {}
	for name, body in toolboxes_raw.items():
		toolboxes[name] = _parse_toolbox(name, body)
	return WorkbenchConfig(toolboxes=MappingProxyType(toolboxes), source=source)


def _parse_toolbox(name: str, body: Any) -> ToolboxDefinition:
	where = f'toolboxes.{name}'
	if not name:
		raise ConfigError('Toolbox names must be non-empty strings')
	if not isinstance(body, dict):
		raise ConfigError(f'{where}: toolbox must be an object')

	description = body.get('description')
	if not isinstance(description, str) or not description:
		raise ConfigError(f"{where}: toolbox '{name}' must have a description")

	servers_raw = body.get('mcpServers')
	if not isinstance(servers_raw, dict):
		raise ConfigError(f"{where}.mcpServers: toolbox '{name}' must have an 'mcpServers' object")
	if not servers_raw:
		raise ConfigError(f"{where}.mcpServers: toolbox '{name}' must have at least one MCP server")

	servers = {
		server_name: _parse_server(f'{where}.mcpServers.{server_name}', server_name, server_body)
		for server_name, server_body in servers_raw.items()
	}
	return ToolboxDefinition(name=name, description=description, servers=MappingProxyType(servers))


def _parse_server(where: str, name: str, body: Any) -> ServerSpec:
	if not name:
		raise ConfigError(f'{where}: server names must be non-empty strings')
	if not isinstance(body, dict):
		raise ConfigError(f'{where}: server must be an object')

	command = body.get('command')
	if not isinstance(command, str) or not command.strip():
		raise ConfigError(f"{where}.command: server '{name}' must have a 'command' field")

	args = body.get('args', [])
	if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
		raise ConfigError(f"{where}.args: 'args' must be an array of strings")

	env = body.get('env', {})
	if not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values()):
		raise ConfigError(f"{where}.env: 'env' must be an object of string values")

	filters = body.get('toolFilters')
	tool_filter: frozenset[str] | None = None
	if filters is not None:
		if not isinstance(filters, list) or not all(isinstance(f, str) for f in filters):
			raise ConfigError(f"{where}.toolFilters: 'toolFilters' must be an array of tool names")
		if '*' not in filters:
			tool_filter = frozenset(filters)

	transport = body.get('transport', 'stdio')
	if transport not in SUPPORTED_TRANSPORTS:
		raise ConfigError(
			f"{where}.transport: transport '{transport}' is not supported (only {', '.join(SUPPORTED_TRANSPORTS)})"
		)

	cwd = body.get('cwd')
	if cwd is not None and not isinstance(cwd, str):
		raise ConfigError(f"{where}.cwd: 'cwd' must be a string")

	return ServerSpec(
		name=name,
		command=command,
		args=tuple(args),
		env=MappingProxyType(dict(env)),
		tool_filter=tool_filter,
		transport=transport,
		cwd=cwd or None,
	)

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any

from mcp_workbench.config import load_config, parse_config
from mcp_workbench.errors import ConfigError, EnvExpansionError


def _server(**overrides: Any) -> dict[str, Any]:
	body: dict[str, Any] = {"command": "mcp-server", "args": ["--stdio"]}
	body.update(overrides)
	return body


def _config(**servers: Any) -> dict[str, Any]:
	return {"toolboxes": {"dev": {"description": "Dev tools", "mcpServers": servers or {"fs": _server()}}}}


def _config_error(data: Any) -> str:
	try:
		parse_config(data)
	except ConfigError as exc:
		return str(exc)
	raise AssertionError("expected ConfigError")


def test_parse_keeps_definition_order_and_defaults() -> None:
	cfg = parse_config(_config(zeta=_server(), alpha=_server(toolFilters=["*"]), mid=_server(toolFilters=["read"])))
	dev = cfg.toolboxes["dev"]
	assert list(dev.servers) == ["zeta", "alpha", "mid"]
	assert dev.servers["zeta"].tool_filter is None
	assert dev.servers["alpha"].tool_filter is None
	assert dev.servers["mid"].tool_filter == frozenset({"read"})
	assert dev.servers["mid"].allows("read") and not dev.servers["mid"].allows("write")
	assert dev.servers["zeta"].args == ("--stdio",)
	assert dev.servers["zeta"].transport == "stdio"
	assert dict(dev.servers["zeta"].env) == {}


def test_structure_errors_carry_location() -> None:
	assert "'toolboxes' object" in _config_error({})
	assert "toolboxes.dev" in _config_error({"toolboxes": {"dev": {"mcpServers": {"fs": _server()}}}})
	assert "at least one MCP server" in _config_error({"toolboxes": {"dev": {"description": "d", "mcpServers": {}}}})
	assert "toolboxes.dev.mcpServers.fs.command" in _config_error(_config(fs={"args": []}))
	assert "toolboxes.dev.mcpServers.fs.args" in _config_error(_config(fs=_server(args="--stdio")))
	assert "toolboxes.dev.mcpServers.fs.env" in _config_error(_config(fs=_server(env={"A": 1})))
	assert "toolboxes.dev.mcpServers.fs.toolFilters" in _config_error(_config(fs=_server(toolFilters="read")))


def test_only_stdio_transport_is_accepted() -> None:
	message = _config_error(_config(fs=_server(transport="http", url="http://localhost:1")))
	assert "transport 'http' is not supported" in message


def test_empty_toolboxes_are_valid() -> None:
	assert parse_config({"toolboxes": {}}).toolbox_names() == []


def _write(tmp: str, data: Any) -> Path:
	path = Path(tmp) / "workbench-config.json"
	path.write_text(data if isinstance(data, str) else json.dumps(data), encoding="utf-8")
	return path


def test_load_config_expands_environment() -> None:
	data = _config(fs=_server(command="${FS_BIN:-npx}", env={"TOKEN": "${FS_TOKEN}"}))
	with tempfile.TemporaryDirectory() as tmp:
		cfg = load_config(_write(tmp, data), environ={"FS_TOKEN": "secret"})
	spec = cfg.toolboxes["dev"].servers["fs"]
	assert spec.command == "npx"
	assert spec.env["TOKEN"] == "secret"


def test_load_config_missing_variable_is_fatal() -> None:
	data = _config(fs=_server(env={"TOKEN": "${FS_TOKEN}"}))
	with tempfile.TemporaryDirectory() as tmp:
		try:
			load_config(_write(tmp, data), environ={})
		except EnvExpansionError as exc:
			assert exc.variable == "FS_TOKEN"
			assert exc.location == "toolboxes.dev.mcpServers.fs.env.TOKEN"
		else:
			raise AssertionError("expected EnvExpansionError")


def test_load_config_reports_bad_json_and_missing_file() -> None:
	with tempfile.TemporaryDirectory() as tmp:
		try:
			load_config(_write(tmp, "{not json"))
		except ConfigError as exc:
			assert "Invalid JSON" in str(exc)
		else:
			raise AssertionError("expected ConfigError")
		try:
			load_config(Path(tmp) / "absent.json")
		except ConfigError as exc:
			assert "Cannot read configuration file" in str(exc)
		else:
			raise AssertionError("expected ConfigError")

from __future__ import annotations

import asyncio
import time
from typing import Any

from mcp_workbench.config import parse_config
from mcp_workbench.errors import (
	ConnectionFailedError,
	InvalidToolIdentifierError,
	ServerNotFoundError,
	ToolboxNotConfiguredError,
	ToolboxNotOpenError,
	ToolNotFoundError,
)
from mcp_workbench.pool import ConnectionPool, ToolIdentifier

from tests._fakes import FakeConnector


def _server(label: str, **extra: Any) -> dict[str, Any]:
	return {"command": "fake-server", "args": [label], **extra}


CONFIG = parse_config(
	{
		"toolboxes": {
			"dev": {"description": "Dev", "mcpServers": {"fs": _server("dev-fs")}},
			"alpha": {
				"description": "Alpha",
				"mcpServers": {"storage": _server("alpha-storage"), "media": _server("alpha-media")},
			},
			"beta": {"description": "Beta", "mcpServers": {"storage": _server("beta-storage")}},
			"filtered": {"description": "Filtered", "mcpServers": {"main": _server("filtered", toolFilters=["a", "c"])}},
			"broken": {"description": "Broken", "mcpServers": {"good": _server("good"), "bad": _server("bad")}},
		}
	}
)

TOOLS = {
	"fs": ["read_file", "echo"],
	"storage": ["upload", "list_files"],
	"media": ["upload"],
	"main": ["a", "b", "c"],
	"good": ["echo"],
	"bad": ["echo"],
}


def _pool(**kwargs: Any) -> tuple[ConnectionPool, FakeConnector]:
	connector = FakeConnector(TOOLS, **kwargs)
	return ConnectionPool(CONFIG, connect_timeout_s=1.0, connector=connector), connector


def test_open_lists_tools_and_is_idempotent() -> None:
	async def scenario() -> None:
		pool, connector = _pool()
		first = await pool.open("dev")
		second = await pool.open("dev")
		assert connector.calls == [("dev", "fs")]
		assert first.to_dict() == second.to_dict()
		assert first.servers_connected == 1
		assert [(t.server, t.name) for t in first.tools] == [("fs", "read_file"), ("fs", "echo")]
		assert first.to_dict()["tools"][0]["toolbox"] == "dev"
		assert pool.is_open("dev") and pool.open_toolboxes() == ["dev"]

	asyncio.run(scenario())


def test_concurrent_opens_share_one_attempt() -> None:
	async def scenario() -> None:
		pool, connector = _pool(delays={"storage": 0.05, "media": 0.05})
		results = await asyncio.gather(*(pool.open("alpha") for _ in range(5)))
		assert sorted(connector.calls) == [("alpha", "media"), ("alpha", "storage")]
		assert all(r.to_dict() == results[0].to_dict() for r in results)

	asyncio.run(scenario())


def test_tool_order_follows_definition_not_connect_race() -> None:
	async def scenario() -> None:
		# media finishes first but storage is declared first.
		pool, _ = _pool(delays={"storage": 0.08, "media": 0.0})
		snapshot = await pool.open("alpha")
		assert [(t.server, t.name) for t in snapshot.tools] == [
			("storage", "upload"),
			("storage", "list_files"),
			("media", "upload"),
		]

	asyncio.run(scenario())


def test_open_unknown_toolbox_lists_configured_names() -> None:
	async def scenario() -> None:
		pool, connector = _pool()
		try:
			await pool.open("nope")
		except ToolboxNotConfiguredError as exc:
			assert "Toolbox 'nope' not found" in str(exc)
			for name in ("dev", "alpha", "beta", "filtered", "broken"):
				assert name in str(exc)
		else:
			raise AssertionError("expected ToolboxNotConfiguredError")
		assert connector.calls == []

	asyncio.run(scenario())


def test_failed_open_rolls_back_successful_connections() -> None:
	async def scenario() -> None:
		pool, connector = _pool(fail={"bad"}, delays={"good": 0.0, "bad": 0.05})
		try:
			await pool.open("broken")
		except ConnectionFailedError as exc:
			assert exc.toolbox == "broken" and exc.server == "bad"
			assert "Failed to connect to server 'bad' in toolbox 'broken'" in str(exc)
			assert "No such file or directory" in str(exc)
		else:
			raise AssertionError("expected ConnectionFailedError")
		assert [c.server for c in connector.made] == ["good"]
		assert connector.made[0].closed
		assert not pool.is_open("broken")

		# A later attempt starts from scratch and other toolboxes are unaffected.
		await pool.open("dev")
		assert pool.open_toolboxes() == ["dev"]

	asyncio.run(scenario())


def test_filters_hide_tools_from_listing_and_resolution() -> None:
	async def scenario() -> None:
		pool, _ = _pool()
		snapshot = await pool.open("filtered")
		assert [t.name for t in snapshot.tools] == ["a", "c"]
		try:
			pool.resolve(ToolIdentifier("filtered", "main", "b"))
		except ToolNotFoundError:
			pass
		else:
			raise AssertionError("expected ToolNotFoundError")

	asyncio.run(scenario())


def test_resolution_errors_are_layered() -> None:
	async def scenario() -> None:
		pool, _ = _pool()
		await pool.open("dev")
		cases = [
			(ToolIdentifier("never-opened", "fs", "read_file"), ToolboxNotOpenError, "Toolbox 'never-opened' not found"),
			(ToolIdentifier("dev", "nope", "read_file"), ServerNotFoundError, "Server 'nope' not found in toolbox 'dev'"),
			(ToolIdentifier("dev", "fs", "nope"), ToolNotFoundError, "Tool 'nope' not found in server 'fs'"),
		]
		for identifier, error, message in cases:
			try:
				await pool.invoke(identifier, {})
			except error as exc:
				assert message in str(exc), str(exc)
			else:
				raise AssertionError(f"expected {error.__name__}")

	asyncio.run(scenario())


def test_same_names_are_disambiguated_by_identifier() -> None:
	async def scenario() -> None:
		pool, _ = _pool()
		await pool.open("alpha")
		await pool.open("beta")
		results = [
			await pool.invoke(ToolIdentifier("alpha", "storage", "upload"), {}),
			await pool.invoke(ToolIdentifier("beta", "storage", "upload"), {}),
			await pool.invoke(ToolIdentifier("alpha", "media", "upload"), {"file": "x"}),
		]
		assert [r.content[0].text for r in results] == [
			"alpha-storage:upload",
			"beta-storage:upload",
			"alpha-media:upload",
		]

	asyncio.run(scenario())


def test_invoke_forwards_arguments_and_defaults_to_empty() -> None:
	async def scenario() -> None:
		pool, connector = _pool()
		await pool.open("dev")
		await pool.invoke(ToolIdentifier("dev", "fs", "read_file"), {"path": "/tmp/x"})
		await pool.invoke(ToolIdentifier("dev", "fs", "echo"))
		assert connector.made[0].calls == [("read_file", {"path": "/tmp/x"}), ("echo", {})]

	asyncio.run(scenario())


def test_empty_identifier_fields_are_rejected() -> None:
	for fields in (("", "fs", "read_file"), ("dev", "", "read_file"), ("dev", "fs", "")):
		try:
			ToolIdentifier(*fields)
		except InvalidToolIdentifierError as exc:
			assert "cannot be empty" in str(exc)
		else:
			raise AssertionError(f"expected InvalidToolIdentifierError for {fields}")


def test_shutdown_closes_everything_and_pool_can_reopen() -> None:
	async def scenario() -> None:
		pool, connector = _pool()
		await pool.open("dev")
		await pool.open("alpha")
		await pool.shutdown(timeout_s=1.0)
		assert pool.open_toolboxes() == []
		assert connector.made and all(c.closed for c in connector.made)
		try:
			pool.resolve(ToolIdentifier("dev", "fs", "echo"))
		except ToolboxNotOpenError:
			pass
		else:
			raise AssertionError("expected ToolboxNotOpenError")

		await pool.open("dev")
		assert len([c for c in connector.made if c.server == "fs"]) == 2

	asyncio.run(scenario())


def test_shutdown_cancels_in_flight_open_and_closes_partial_connections() -> None:
	async def scenario() -> None:
		pool, connector = _pool(delays={"storage": 0.0, "media": 10.0})
		opener = asyncio.create_task(pool.open("alpha"))
		await asyncio.sleep(0.05)
		await pool.shutdown(timeout_s=1.0)
		assert [c.server for c in connector.made] == ["storage"]
		assert connector.made[0].closed
		assert not pool.is_open("alpha")
		try:
			await opener
		except asyncio.CancelledError:
			pass
		else:
			raise AssertionError("expected the pending open to be cancelled")

	asyncio.run(scenario())


def test_shutdown_abandons_connections_that_overrun_the_timeout() -> None:
	async def scenario() -> float:
		pool, connector = _pool(hang_close={"media"})
		await pool.open("alpha")
		started = time.monotonic()
		await pool.shutdown(timeout_s=0.3)
		elapsed = time.monotonic() - started
		assert pool.open_toolboxes() == []
		closed = {c.server: c.closed for c in connector.made}
		assert closed == {"storage": True, "media": False}
		return elapsed

	elapsed = asyncio.run(scenario())
	assert elapsed < 1.5, f"shutdown took {elapsed:.2f}s"

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from mcp_workbench.config import default_config_path, load_config
from mcp_workbench.stdio_client import MCPStdioClient


def _assert(cond: bool, msg: str) -> None:
	if not cond:
		raise AssertionError(msg)


def _text(resp: dict) -> str:
	return (((resp.get("result") or {}).get("content") or [{}])[0] or {}).get("text") or ""


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="Start the workbench on a config and open its toolboxes.")
	parser.add_argument("--config", default=None, help="Workbench config (default: WORKBENCH_CONFIG or ./workbench-config.json)")
	parser.add_argument("toolboxes", nargs="*", help="Toolboxes to open (default: all configured)")
	args = parser.parse_args(argv)

	repo_root = Path(__file__).resolve().parents[1]
	config_path = Path(args.config) if args.config else default_config_path()
	config = load_config(config_path)
	names = args.toolboxes or config.toolbox_names()

	workbench = MCPStdioClient(
		name="mcp-workbench",
		command=[sys.executable, "-m", "mcp_workbench", "--config", str(config_path)],
		cwd=str(repo_root),
	)
	workbench.start()
	try:
		workbench.initialize()
		print(workbench.instructions)
		print()

		tools = {t.get("name") for t in workbench.list_tools()}
		_assert(tools == {"open_toolbox", "use_tool"}, f"unexpected workbench tools: {sorted(tools)}")

		failed = 0
		for name in names:
			resp = workbench.request(
				"tools/call",
				{"name": "open_toolbox", "arguments": {"toolbox": name}},
				timeout_s=90.0,
			)
			result = resp.get("result") or {}
			if "error" in resp or result.get("isError"):
				failed += 1
				print(f"FAIL {name}: {_text(resp) or resp.get('error')}")
				continue
			payload = json.loads(_text(resp))
			print(f"OK   {name}: {payload['servers_connected']} server(s), {len(payload['tools'])} tool(s)")
			for tool in payload["tools"]:
				print(f"       {tool['server']}/{tool['name']}")
	finally:
		workbench.close()

	if failed:
		print(f"\n{failed} toolbox(es) failed to open", file=sys.stderr)
		return 1
	return 0


if __name__ == "__main__":
	raise SystemExit(main())

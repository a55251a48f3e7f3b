from __future__ import annotations

import json
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from mcp_workbench import __version__

PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")


@dataclass
class _ChildIO:
	proc: subprocess.Popen[bytes]
	messages: "queue.Queue[dict[str, Any]]" = field(default_factory=queue.Queue)
	stderr_lines: list[str] = field(default_factory=list)
	stray_stdout: list[str] = field(default_factory=list)


def _pump_stdout(io: _ChildIO) -> None:
	assert io.proc.stdout
	for raw in iter(io.proc.stdout.readline, b""):
		text = raw.decode("utf-8", errors="replace").strip()
		if not text:
			continue
		try:
			msg = json.loads(text)
		except ValueError:
			io.stray_stdout.append(text)
			continue
		if isinstance(msg, dict):
			io.messages.put(msg)


def _pump_stderr(io: _ChildIO) -> None:
	assert io.proc.stderr
	for raw in iter(io.proc.stderr.readline, b""):
		io.stderr_lines.append(raw.decode("utf-8", errors="replace").rstrip("\n"))
		if len(io.stderr_lines) > 400:
			del io.stderr_lines[:200]


class MCPStdioClient:
	"""Blocking JSON-RPC client for an MCP server launched as a child process.

	Meant for tests and smoke scripts: one request in flight at a time, responses
	matched by id, notifications from the server are dropped.
	"""

	def __init__(
		self,
		*,
		name: str,
		command: list[str],
		env: dict[str, str] | None = None,
		cwd: str | None = None,
	) -> None:
		self.name = name
		self.command = command
		self.env = env or {}
		self.cwd = cwd
		self.server_info: dict[str, Any] = {}
		self.instructions: str = ""
		self._next_id = 0
		self._io: _ChildIO | None = None

	def __enter__(self) -> "MCPStdioClient":
		self.start()
		try:
			self.initialize()
		except Exception:
			self.close()
			raise
		return self

	def __exit__(self, *exc: object) -> None:
		self.close()

	@property
	def pid(self) -> int | None:
		return self._io.proc.pid if self._io else None

	def stderr_tail(self, lines: int = 50) -> str:
		return "\n".join((self._io.stderr_lines if self._io else [])[-lines:])

	def start(self) -> None:
		if self._io is not None:
			return
		env = os.environ.copy()
		env.update(self.env)
		proc = subprocess.Popen(
			self.command,
			stdin=subprocess.PIPE,
			stdout=subprocess.PIPE,
			stderr=subprocess.PIPE,
			env=env,
			cwd=self.cwd,
		)
		io = _ChildIO(proc=proc)
		for target, suffix in ((_pump_stdout, "stdout"), (_pump_stderr, "stderr")):
			threading.Thread(target=target, args=(io,), name=f"{self.name}-{suffix}", daemon=True).start()
		self._io = io

	def send_signal(self, sig: int = signal.SIGTERM) -> None:
		if self._io is not None:
			self._io.proc.send_signal(sig)

	def wait(self, timeout_s: float) -> int | None:
		if self._io is None:
			return None
		try:
			return self._io.proc.wait(timeout=timeout_s)
		except subprocess.TimeoutExpired:
			return None

	def close(self) -> None:
		if self._io is None:
			return
		proc = self._io.proc
		self._io = None
		if proc.stdin and not proc.stdin.closed:
			try:
				proc.stdin.close()
			except OSError:
				pass
		try:
			proc.wait(timeout=5)
			return
		except subprocess.TimeoutExpired:
			proc.terminate()
		try:
			proc.wait(timeout=3)
		except subprocess.TimeoutExpired:
			proc.kill()
			proc.wait(timeout=3)

	def _send(self, msg: dict[str, Any]) -> None:
		if self._io is None:
			raise RuntimeError(f"{self.name}: client not started")
		stdin = self._io.proc.stdin
		assert stdin
		stdin.write((json.dumps(msg, ensure_ascii=False) + "\n").encode("utf-8"))
		stdin.flush()

	def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
		msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
		if params is not None:
			msg["params"] = params
		self._send(msg)

	def request(self, method: str, params: dict[str, Any] | None = None, *, timeout_s: float = 20.0) -> dict[str, Any]:
		self._next_id += 1
		req_id = self._next_id
		msg: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
		if params is not None:
			msg["params"] = params
		self._send(msg)
		return self._wait_response(req_id, timeout_s=timeout_s)

	def _wait_response(self, req_id: int, *, timeout_s: float) -> dict[str, Any]:
		io = self._io
		if io is None:
			raise RuntimeError(f"{self.name}: client not started")
		deadline = time.monotonic() + timeout_s
		while time.monotonic() < deadline:
			try:
				msg = io.messages.get(timeout=0.2)
			except queue.Empty:
				if io.proc.poll() is not None:
					raise RuntimeError(
						f"{self.name} exited with code {io.proc.returncode}. stderr tail:\n{self.stderr_tail()}"
					)
				continue
			if msg.get("id") == req_id and ("result" in msg or "error" in msg):
				return msg
		raise TimeoutError(f"Timed out waiting for {self.name} response id={req_id}. stderr tail:\n{self.stderr_tail()}")

	def initialize(self, *, protocol_versions: Iterable[str] = PROTOCOL_VERSIONS) -> dict[str, Any]:
		last_err: Exception | None = None
		for version in protocol_versions:
			try:
				resp = self.request(
					"initialize",
					{
						"protocolVersion": version,
						"clientInfo": {"name": "mcp-workbench-tests", "version": __version__},
						"capabilities": {},
					},
					timeout_s=20.0,
				)
				if "error" in resp:
					raise RuntimeError(resp["error"])
			except Exception as exc:  # noqa: BLE001
				last_err = exc
				continue
			result = resp.get("result") or {}
			self.server_info = result.get("serverInfo") or {}
			self.instructions = result.get("instructions") or ""
			self.notify("notifications/initialized", {})
			return resp
		raise RuntimeError(f"Failed to initialize {self.name}") from last_err

	def list_tools(self, *, timeout_s: float = 20.0) -> list[dict[str, Any]]:
		resp = self.request("tools/list", {}, timeout_s=timeout_s)
		if "error" in resp:
			raise RuntimeError(f"{self.name} tools/list failed: {resp['error']}")
		return [t for t in (resp.get("result") or {}).get("tools") or [] if isinstance(t, dict)]

	def call_tool(self, name: str, arguments: dict[str, Any] | None = None, *, timeout_s: float = 30.0) -> dict[str, Any]:
		resp = self.request("tools/call", {"name": name, "arguments": arguments or {}}, timeout_s=timeout_s)
		if "error" in resp:
			raise RuntimeError(f"{self.name} tools/call {name} failed: {resp['error']}")
		return resp.get("result") or {}

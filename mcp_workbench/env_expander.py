from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Any

from mcp_workbench.errors import EnvExpansionError

# ${VAR} is required, ${VAR:-default} falls back when VAR is unset (an empty value still wins).
_ENV_VAR_RE = re.compile(r'\$\{([A-Z_][A-Z0-9_]*)(?::-(.*?))?\}')
_UNCLOSED_RE = re.compile(r'\$\{[^}]*$')


def expand_string(text: str, location: str, environ: Mapping[str, str] | None = None) -> str:
	env = os.environ if environ is None else environ

	if _UNCLOSED_RE.search(text):
		raise EnvExpansionError('', location, 'Malformed syntax: unclosed brace')

	def _replace(match: re.Match[str]) -> str:
		name, default = match.group(1), match.group(2)
		value = env.get(name)
		if value is not None:
			return value
		if default is not None:
			return default
		raise EnvExpansionError(name, location, 'Variable is not set')

	return _ENV_VAR_RE.sub(_replace, text)


def expand_env_vars(value: Any, location: str = '', environ: Mapping[str, str] | None = None) -> Any:
	if isinstance(value, str):
		return expand_string(value, location, environ)
	if isinstance(value, list):
		return [expand_env_vars(item, f'{location}[{i}]', environ) for i, item in enumerate(value)]
	if isinstance(value, dict):
		out: dict[str, Any] = {}
		for key, item in value.items():
			path = f'{location}.{key}' if location else str(key)
			new_key = expand_string(key, path, environ) if isinstance(key, str) else key
			out[new_key] = expand_env_vars(item, path, environ)
		return out
	return value

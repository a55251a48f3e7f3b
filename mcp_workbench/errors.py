from __future__ import annotations


class WorkbenchError(Exception):
	pass


class ConfigError(WorkbenchError):
	pass


class EnvExpansionError(ConfigError):
	def __init__(self, variable: str, location: str, reason: str) -> None:
		self.variable = variable
		self.location = location
		self.reason = reason
		lines = [
			'Environment variable expansion failed',
			f'  Variable: {variable or "(none)"}',
			f'  Location: {location or "(root)"}',
			f'  Reason: {reason}',
		]
		if variable:
			lines += ['', 'Set the environment variable before starting the server:', f'  export {variable}=value']
		super().__init__('\n'.join(lines))


class ToolboxNotConfiguredError(WorkbenchError):
	def __init__(self, toolbox: str, available: list[str]) -> None:
		self.toolbox = toolbox
		self.available = list(available)
		names = ', '.join(self.available) if self.available else '(none configured)'
		super().__init__(f"Toolbox '{toolbox}' not found. Available toolboxes: {names}")


class ConnectionFailedError(WorkbenchError):
	def __init__(self, toolbox: str, server: str, reason: str) -> None:
		self.toolbox = toolbox
		self.server = server
		self.reason = reason
		super().__init__(f"Failed to connect to server '{server}' in toolbox '{toolbox}': {reason}")


class InvalidToolIdentifierError(WorkbenchError):
	def __init__(self, field: str) -> None:
		self.field = field
		super().__init__(f'Invalid tool identifier: {field} cannot be empty')


class ResolutionError(WorkbenchError):
	pass


class ToolboxNotOpenError(ResolutionError):
	def __init__(self, toolbox: str) -> None:
		self.toolbox = toolbox
		super().__init__(f"Toolbox '{toolbox}' not found (it is not open; call open_toolbox first)")


class ServerNotFoundError(ResolutionError):
	def __init__(self, toolbox: str, server: str) -> None:
		self.toolbox = toolbox
		self.server = server
		super().__init__(f"Server '{server}' not found in toolbox '{toolbox}'")


class ToolNotFoundError(ResolutionError):
	def __init__(self, toolbox: str, server: str, tool: str) -> None:
		self.toolbox = toolbox
		self.server = server
		self.tool = tool
		super().__init__(f"Tool '{tool}' not found in server '{server}' (toolbox '{toolbox}')")

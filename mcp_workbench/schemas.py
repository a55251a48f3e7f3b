from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_workbench.pool import ToolIdentifier


class OpenToolboxRequest(BaseModel):
	model_config = ConfigDict(extra='forbid')

	toolbox: str = Field(
		min_length=1,
		description="Name of the toolbox to open (e.g. 'incident-analysis', 'gitlab-workflow').",
	)


class ToolIdentifierModel(BaseModel):
	model_config = ConfigDict(extra='forbid')

	toolbox: str = Field(min_length=1, description='Name of the opened toolbox.')
	server: str = Field(min_length=1, description='Name of the MCP server providing the tool.')
	tool: str = Field(min_length=1, description='Name of the tool as advertised by the downstream server.')

	def to_identifier(self) -> ToolIdentifier:
		return ToolIdentifier(toolbox=self.toolbox, server=self.server, tool=self.tool)


class UseToolRequest(BaseModel):
	model_config = ConfigDict(extra='forbid')

	tool: ToolIdentifierModel = Field(description='Structured identifier for the tool to invoke.')
	arguments: dict[str, Any] = Field(default_factory=dict, description='Arguments passed verbatim to the tool.')


def input_schema(model: type[BaseModel]) -> dict[str, Any]:
	return model.model_json_schema()


def format_validation_error(exc: ValidationError) -> str:
	parts = []
	for err in exc.errors():
		field = '.'.join(str(p) for p in err.get('loc') or ()) or '(root)'
		parts.append(f'{field}: {err.get("msg")}')
	return '; '.join(parts)

"""
Helpers for building tool input schemas.

Example:
    spec = (
        ToolSchemaBuilder("get_weather")
        .description("Get the current weather")
        .param("location", "string", "City name", required=True)
        .param("units", "string", "Temperature units", enum=["celsius", "fahrenheit"])
        .to_spec()
    )
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from agent_mailbox.interfaces import ToolSpec


@dataclass
class ToolParameter:
    """One property of a tool's input object."""

    name: str
    type: str
    description: str = ""
    required: bool = False
    enum: Optional[list] = None
    items: Optional[dict] = None
    default: Any = None

    def to_schema(self) -> dict:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        if self.items is not None:
            schema["items"] = self.items
        if self.default is not None:
            schema["default"] = self.default
        return schema


@dataclass
class ToolSchema:
    name: str
    description: str = ""
    parameters: list[ToolParameter] = field(default_factory=list)

    def to_input_schema(self) -> dict:
        """JSON schema for the tool's input object."""
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def to_spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description=self.description,
            input_schema=self.to_input_schema(),
        )


class ToolSchemaBuilder:
    """Fluent builder for ToolSchema."""

    def __init__(self, name: str):
        self._name = name
        self._description = ""
        self._parameters: list[ToolParameter] = []

    def description(self, text: str) -> "ToolSchemaBuilder":
        self._description = text
        return self

    def param(
        self,
        name: str,
        type: str,
        description: str = "",
        *,
        required: bool = False,
        enum: Optional[list] = None,
        items: Optional[dict] = None,
        default: Any = None,
    ) -> "ToolSchemaBuilder":
        self._parameters.append(
            ToolParameter(
                name=name,
                type=type,
                description=description,
                required=required,
                enum=enum,
                items=items,
                default=default,
            )
        )
        return self

    def build(self) -> ToolSchema:
        return ToolSchema(
            name=self._name,
            description=self._description,
            parameters=list(self._parameters),
        )

    def to_spec(self) -> ToolSpec:
        return self.build().to_spec()

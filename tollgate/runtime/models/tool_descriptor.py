from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..llm.types import ToolSpec
from .spec_common import _clean_non_empty_str, _clean_tool_name


class ToolDescriptor(BaseModel):
    """
    Declarative tool contract held by the registry.

    Immutable once constructed; `destructive` tools are gated by the approval engine.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str = ""
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    destructive: bool = False

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        return _clean_tool_name(v)

    @field_validator("parameters")
    @classmethod
    def _validate_parameters(cls, v: dict[str, Any]) -> dict[str, Any]:
        if v.get("type", "object") != "object":
            raise ValueError("parameters schema must describe an object.")
        return v

    @model_validator(mode="before")
    @classmethod
    def _default_display_name(cls, data: Any) -> Any:
        if isinstance(data, dict):
            display = data.get("display_name")
            if not isinstance(display, str) or not display.strip():
                data = dict(data)
                data["display_name"] = data.get("name", "")
        return data

    @field_validator("display_name")
    @classmethod
    def _validate_display_name(cls, v: str) -> str:
        return _clean_non_empty_str(v, field_name="display_name")

    def to_tool_spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description or self.display_name, input_schema=dict(self.parameters))

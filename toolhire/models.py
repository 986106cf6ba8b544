"""
Tool Hire Advisor — Pydantic Request/Response Models
======================================================
Wire format is camelCase JSON; Python code uses snake_case attributes.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class Phase(str, Enum):
    GATHERING = "gathering"
    RECOMMENDATION = "recommendation"


class MalformedStreamRecord(ValueError):
    """A stream line that does not parse as a StreamChunk."""


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Turn(WireModel):
    role: Literal["user", "model"]
    text: str


class PartialResponse(WireModel):
    text: str = ""
    phase: Phase


class AdvisorRequest(WireModel):
    # Validated by the route so an unknown phase gets the documented 400 body
    phase: str
    user_input: str | None = Field(default=None, max_length=10000)
    conversation_state: list[Turn] = Field(default_factory=list)
    project_information: str | None = None
    streaming: bool = False
    partial_response: PartialResponse | None = None


class AdvisorResponse(WireModel):
    text: str
    conversation_state: list[Turn] | None = None
    is_complete: bool | None = None
    project_information: str | None = None
    error: bool | None = None


class StreamChunk(WireModel):
    chunk: str | None = None
    done: bool = False
    error: bool | None = None
    text: str | None = None
    conversation_state: list[Turn] | None = None
    is_complete: bool | None = None
    project_information: str | None = None
    interrupted: bool | None = None

    def to_line(self) -> str:
        return json.dumps(self.to_wire()) + "\n"

    @classmethod
    def from_line(cls, line: str) -> "StreamChunk":
        try:
            return cls.model_validate_json(line)
        except ValidationError as e:
            raise MalformedStreamRecord(f"Unparseable stream record: {line[:200]!r}") from e

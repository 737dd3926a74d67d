"""Base pydantic model for request and response bodies (camelCase on the wire)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    @classmethod
    def serialize(cls, obj: Any) -> dict:
        return cls.model_validate(obj).model_dump(by_alias=True, mode="json")

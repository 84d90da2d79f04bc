"""Request payloads accepted by the matching API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .conf import TOPIC_MAX_LEN, USER_ID_MAX_LEN, USER_ID_PATTERN, Difficulty
from .errors import ValidationError


class _RequestModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )

    user_id: str = Field(..., min_length=1, max_length=USER_ID_MAX_LEN, pattern=USER_ID_PATTERN)


def _check_topic(value: str | None) -> str | None:
    if value is not None and ":" in value:
        msg = "topic must not contain ':'"
        raise ValueError(msg)
    return value


class JoinRequest(_RequestModel):
    topic: str = Field(..., min_length=1, max_length=TOPIC_MAX_LEN)
    difficulty: Difficulty

    @field_validator("topic")
    @classmethod
    def validate_topic(cls, value: str | None) -> str | None:
        return _check_topic(value)

    @field_validator("difficulty", mode="before")
    @classmethod
    def normalise_difficulty(cls, value: Any) -> Any:
        return Difficulty(value) if isinstance(value, str) else value


class RequeueRequest(JoinRequest):
    pass


class CancelRequest(_RequestModel):
    topic: str | None = Field(None, min_length=1, max_length=TOPIC_MAX_LEN)

    @field_validator("topic")
    @classmethod
    def validate_topic(cls, value: str | None) -> str | None:
        return _check_topic(value)


def parse_request[M: _RequestModel](model: type[M], data: Any) -> M:
    """Validate *data* into *model*, surfacing failures as ``ValidationError``."""
    if not isinstance(data, dict):
        msg = "Request body must be a JSON object"
        raise ValidationError(msg)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        msg = f"{field}: {first['msg']}"
        raise ValidationError(msg) from exc

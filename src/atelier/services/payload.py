"""Generation request payload parsing and validation."""

from typing import Any

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from atelier.models.prompt_job import PromptOperation
from atelier.services.exceptions import ValidationError

MIN_DIMENSION = 1024
MAX_DIMENSION = 4096


def validate_object_path(path: str) -> str:
    """Validate an internal storage object path ("bucket/key" or "key").

    Raises:
        ValueError: If the path is empty, absolute, a URL, or escapes its bucket
    """
    path = path.strip()
    if not path:
        raise ValueError("object path cannot be empty")
    if "://" in path:
        raise ValueError(f"object path must not be a URL: {path}")
    if path.startswith("/"):
        raise ValueError(f"object path must be relative: {path}")
    if any(segment in ("", ".", "..") for segment in path.split("/")):
        raise ValueError(f"object path has an empty or relative segment: {path}")
    return path


class GenerationRequest(BaseModel):
    """Immutable generation parameters stored as Job.request_payload.

    Accepts both snake_case and the camelCase / short names used by UI clients
    (refPaths / ref, targetPath / target).
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    ref_paths: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("ref_paths", "refPaths", "ref"),
        description="Reference image object paths",
    )
    target_path: str = Field(
        ...,
        validation_alias=AliasChoices("target_path", "targetPath", "target"),
        description="Target image object path",
    )
    prompt: str | None = Field(default=None, description="Generation prompt text")
    width: int = Field(default=MAX_DIMENSION, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    height: int = Field(default=MAX_DIMENSION, ge=MIN_DIMENSION, le=MAX_DIMENSION)
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("ref_paths")
    @classmethod
    def validate_ref_paths(cls, v: list[str]) -> list[str]:
        return [validate_object_path(path) for path in v]

    @field_validator("target_path")
    @classmethod
    def validate_target_path(cls, v: str) -> str:
        return validate_object_path(v)

    @field_validator("prompt")
    @classmethod
    def normalize_prompt(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def to_payload(self) -> dict[str, Any]:
        """Canonical JSON form persisted on the job."""
        return self.model_dump(mode="json")


def parse_generation_request(payload: dict[str, Any]) -> GenerationRequest:
    """Parse a raw payload into a GenerationRequest.

    Args:
        payload: Raw request parameters

    Returns:
        Validated request

    Raises:
        ValidationError: If references are malformed or parameters are out of range
    """
    try:
        return GenerationRequest.model_validate(payload)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid generation request: {details}") from e


class PromptRequest(BaseModel):
    """Asks the prompt sub-queue to write the job's prompt before dispatch.

    generate: write a prompt from the reference and target images
    enhance: rewrite the payload prompt following the caller's instructions
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    operation: PromptOperation = Field(default=PromptOperation.GENERATE)
    instructions: str | None = Field(default=None, max_length=1000)
    priority: int | None = Field(default=None, ge=1, le=10)

"""Inbound payload decoding.

The request body is a topic-webhook envelope ``{cache, topic, binary}`` whose
``binary`` field is a base64-encoded Submission JSON document. Decoding yields
either a ParsedSubmission or a ParseFailure; the latter never carries a
submission id, so callers cannot issue a status update for it.
"""
import base64
import binascii
import json
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from oj_runner.core.errors import DecodeError, JudgeError, ValidationError


class RunRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cache: str = ""
    topic: str = ""
    binary: Optional[str] = None


class SubmissionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    user_id: Optional[str] = None
    problem_id: str = Field(min_length=1)
    language: Optional[str] = None
    # Checked once the submission has an id, so a missing program is recorded as an error
    code: Optional[str] = None
    status: Optional[str] = None
    result: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None


@dataclass(frozen=True)
class ParsedSubmission:
    submission: SubmissionPayload
    cache: str = ""
    topic: str = ""


@dataclass(frozen=True)
class ParseFailure:
    error: JudgeError

    @property
    def message(self) -> str:
        return str(self.error)


ParseResult = Union[ParsedSubmission, ParseFailure]


def _first_error(e: PydanticValidationError) -> str:
    err = e.errors()[0]
    location = ".".join(str(p) for p in err.get("loc", ())) or "body"
    return f"{location}: {err.get('msg', 'invalid value')}"


def decode_request(body: Union[str, bytes, None]) -> ParsedSubmission:
    """Decode a raw request body into a submission, raising typed failures."""
    if body is None or not body.strip():
        raise ValidationError("Request body is empty")

    try:
        envelope = json.loads(body)
    except (ValueError, RecursionError) as e:
        raise DecodeError(f"Invalid payload: {e}") from e
    if not isinstance(envelope, dict):
        raise DecodeError("Invalid payload: expected a JSON object")

    try:
        request = RunRequest.model_validate(envelope)
    except PydanticValidationError as e:
        raise DecodeError(f"Invalid payload: {_first_error(e)}") from e
    if not request.binary:
        raise ValidationError("Binary submission data is missing")

    try:
        raw = base64.b64decode(request.binary, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64: {e}") from e

    try:
        document = json.loads(raw)
    except (ValueError, RecursionError) as e:
        raise DecodeError(f"Invalid submission: {e}") from e
    if not isinstance(document, dict):
        raise DecodeError("Invalid submission: expected a JSON object")

    try:
        submission = SubmissionPayload.model_validate(document)
    except PydanticValidationError as e:
        raise DecodeError(f"Invalid submission: {_first_error(e)}") from e
    return ParsedSubmission(submission=submission, cache=request.cache, topic=request.topic)


def parse_request(body: Union[str, bytes, None]) -> ParseResult:
    try:
        return decode_request(body)
    except (ValidationError, DecodeError) as e:
        return ParseFailure(error=e)

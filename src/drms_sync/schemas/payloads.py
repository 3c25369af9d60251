"""Mutation payload envelope.

Producers hand the queue a payload for one of the known entity families. The
payload is validated here, at the producing boundary, against a discriminated
union keyed by ``entity_type``; the queue and engine then carry the dumped JSON
as opaque data.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from drms_sync.models.sync_queue import EntityType
from drms_sync.utils.exceptions import PayloadValidationError


class BasePayload(BaseModel):
    """Fields every synced record carries; domain fields pass through."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    version: int = Field(default=1, ge=0, description="Version the edit is based on")
    last_modified: Optional[datetime] = Field(
        default=None,
        alias="lastModified",
        description="Client-side modification time used by last-write-wins",
    )


class AssessmentPayload(BasePayload):
    """Rapid or preliminary assessment."""

    entity_type: Literal["assessment"] = "assessment"
    assessment_type: Optional[str] = Field(default=None, alias="assessmentType")
    affected_entity_id: Optional[str] = Field(default=None, alias="affectedEntityId")


class ResponsePayload(BasePayload):
    """Response plan or delivery against an assessment."""

    entity_type: Literal["response"] = "response"
    assessment_id: Optional[str] = Field(default=None, alias="assessmentId")
    response_type: Optional[str] = Field(default=None, alias="responseType")


class EntityPayload(BasePayload):
    """Affected location, camp or community."""

    entity_type: Literal["entity"] = "entity"
    name: Optional[str] = None
    location: Optional[Dict[str, Any]] = None


MutationPayload = Annotated[
    Union[AssessmentPayload, ResponsePayload, EntityPayload],
    Field(discriminator="entity_type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(MutationPayload)


def parse_payload(
    entity_type: Union[EntityType, str],
    payload: Union[BasePayload, Mapping[str, Any], None],
) -> BasePayload:
    """Validate a producer payload for ``entity_type``.

    Args:
        entity_type: Entity family the mutation belongs to
        payload: Payload model or plain mapping

    Returns:
        Typed payload model

    Raises:
        PayloadValidationError: Unknown entity type, mismatched tag or invalid fields
    """
    try:
        tag = EntityType(entity_type).value
    except ValueError as e:
        raise PayloadValidationError(f"Unknown entity type: {entity_type}") from e

    if isinstance(payload, BasePayload):
        payload_tag = getattr(payload, "entity_type", None)
        if payload_tag != tag:
            raise PayloadValidationError(
                f"Payload tagged {payload_tag!r} cannot be queued as {tag!r}"
            )
        return payload

    data = dict(payload or {})
    data.pop("entityType", None)
    existing = data.get("entity_type")
    if existing is not None and existing != tag:
        raise PayloadValidationError(
            f"Payload tagged {existing!r} cannot be queued as {tag!r}"
        )
    data["entity_type"] = tag

    try:
        parsed: BasePayload = _payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise PayloadValidationError(f"Invalid {tag} payload: {e}") from e
    return parsed


def dump_payload(payload: BasePayload) -> Dict[str, Any]:
    """Serialize a validated payload to the JSON stored in the queue.

    The ``entity_type`` tag only selects the model; the queue item carries the
    entity type, so the pushed domain data stays free of it.
    """
    dumped: Dict[str, Any] = payload.model_dump(
        mode="json", by_alias=True, exclude_none=True, exclude={"entity_type"}
    )
    return dumped

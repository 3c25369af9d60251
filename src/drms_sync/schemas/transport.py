"""Wire models for the push/pull sync transport."""

import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# HTTP statuses worth retrying even though they are below 500
RETRYABLE_CLIENT_STATUSES = frozenset({408, 425, 429})


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with wire aliases."""
        wire: Dict[str, Any] = self.model_dump(mode="json", by_alias=True)
        return wire


class PushStatus(str, enum.Enum):
    """Per-item push outcome."""

    OK = "ok"
    CONFLICT = "conflict"
    ERROR = "error"


class PushItem(WireModel):
    """One queued mutation in a push batch."""

    entity_type: str = Field(..., alias="entityType")
    action: str
    entity_uuid: str = Field(..., alias="entityUuid")
    payload: Dict[str, Any] = Field(default_factory=dict)
    local_version: int = Field(..., alias="localVersion")
    offline_id: Optional[str] = Field(default=None, alias="offlineId")


class PushResult(WireModel):
    """Server verdict for one pushed item."""

    entity_uuid: str = Field(..., alias="entityUuid")
    status: PushStatus
    server_version: Optional[int] = Field(default=None, alias="serverVersion")
    server_data: Optional[Dict[str, Any]] = Field(default=None, alias="serverData")
    server_last_modified: Optional[Any] = Field(
        default=None, alias="serverLastModified"
    )
    error: Optional[str] = None
    http_status: Optional[int] = Field(default=None, alias="httpStatus")

    @property
    def retryable(self) -> bool:
        """Transient failures go back through backoff; 4xx are permanent."""
        if self.http_status is None:
            return True
        if self.http_status >= 500:
            return True
        return self.http_status in RETRYABLE_CLIENT_STATUSES


class PullChange(WireModel):
    """Server-side revision of an entity."""

    entity_type: str = Field(..., alias="entityType")
    entity_uuid: str = Field(..., alias="entityUuid")
    version: int
    data: Optional[Dict[str, Any]] = None
    last_modified: Optional[Any] = Field(default=None, alias="lastModified")
    deleted: bool = False


class PullResponse(WireModel):
    """Page of server changes since a cursor."""

    changes: List[PullChange] = Field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = Field(default=False, alias="hasMore")

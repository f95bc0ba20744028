"""Wire models for the batch submission endpoint."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..utils.datetime import now_utc, to_iso_string
from .sync_models import QueueItem


logger = logging.getLogger(__name__)


class BatchItem(BaseModel):
    """One queue item as sent to the remote authority."""
    id: str
    task_id: str
    operation: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    retry_count: int = 0

    @classmethod
    def from_queue_item(cls, item: QueueItem) -> "BatchItem":
        return cls(
            id=item.id,
            task_id=item.task_id,
            operation=item.operation.value,
            data=item.parsed_data(),
            created_at=to_iso_string(item.created_at),
            retry_count=item.retry_count or 0,
        )


class BatchSyncRequest(BaseModel):
    """Batch submission request."""
    items: List[BatchItem]
    client_timestamp: str = Field(default_factory=lambda: to_iso_string(now_utc()))

    @classmethod
    def from_queue_items(cls, items: List[QueueItem]) -> "BatchSyncRequest":
        return cls(items=[BatchItem.from_queue_item(item) for item in items])


class ProcessedItem(BaseModel):
    """Per-item verdict returned by the remote authority."""
    model_config = ConfigDict(extra="ignore")

    client_id: str
    status: str
    resolved_data: Optional[Dict[str, Any]] = None
    server_id: Optional[str] = None
    error: Optional[str] = None

    @field_validator("client_id", "server_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)


class BatchSyncResponse(BaseModel):
    """Batch submission response."""
    model_config = ConfigDict(extra="ignore")

    processed_items: List[ProcessedItem] = Field(default_factory=list)

    @field_validator("processed_items", mode="before")
    @classmethod
    def _drop_unusable_entries(cls, value: Any) -> Any:
        """Validate entries one by one, skipping the ones that cannot be used."""
        if value is None:
            return []
        if not isinstance(value, list):
            return value

        entries = []
        for index, entry in enumerate(value):
            try:
                entries.append(ProcessedItem.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping malformed processed item at index {index}: {e.error_count()} error(s)")
        return entries

    def by_client_id(self) -> Dict[str, ProcessedItem]:
        """Index results by correlation key; a repeated key keeps the last entry."""
        return {processed.client_id: processed for processed in self.processed_items}

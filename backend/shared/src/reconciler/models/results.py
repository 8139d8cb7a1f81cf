"""Outcome of reconciling one event."""

from pydantic import BaseModel, Field

from reconciler.models.enums import ProcessingStatus, RecordType


class ReconcileResult(BaseModel):
    """What a reconciler did with an event.

    ``status`` is the audit status the event closes with (success or
    skipped); failures are raised, not returned.
    """

    status: ProcessingStatus = ProcessingStatus.SUCCESS
    record_type: RecordType | None = None
    record_id: str | None = None
    receipt_number: str | None = None
    notification_ids: list[str] = Field(default_factory=list)
    note: str | None = None

    @classmethod
    def noop(cls, note: str, status: ProcessingStatus = ProcessingStatus.SUCCESS) -> "ReconcileResult":
        return cls(status=status, note=note)

"""Change events delivered by the change feed.

A change event carries no payload guarantees beyond "something in this
resource for this subject changed". Consumers must treat it as a signal to
re-sync, never as data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID, uuid4

# Remote store resource names.
MEDICATIONS = "medications"
MEDICATION_DOSES = "medication_doses"
MEDICAL_REPORTS = "medical_reports"


class ChangeKind(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    resource: str
    kind: ChangeKind
    subject_id: str
    event_id: UUID = field(default_factory=uuid4)

"""
Job message types and their JSON wire format.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..errors import MessageFormatError

CONTENT_TYPE_JSON = "application/json"


class ScheduleType(str, Enum):
    """Why a job was enqueued."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class Outcome(str, Enum):
    """How a delivered message was settled."""
    COMPLETED = "completed"
    DROPPED = "dropped"
    ABANDONED = "abandoned"
    DEAD_LETTERED = "dead_lettered"


def new_message_id() -> str:
    """Generate a unique message id of the form job_<epoch-ms>_<9 hex chars>."""
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class JobMessage:
    """Request to run the price-monitor pipeline for one search."""
    search_id: str
    user_id: str
    schedule_type: ScheduleType = ScheduleType.SCHEDULED

    def to_body(self) -> Dict[str, Any]:
        """Convert to the wire body."""
        return {
            'searchId': self.search_id,
            'userId': self.user_id,
            'scheduleType': self.schedule_type.value
        }

    @classmethod
    def from_body(cls, body: Union[Dict[str, Any], str, bytes]) -> 'JobMessage':
        """
        Decode a wire body.

        Raises:
            MessageFormatError: If the body is not valid JSON or lacks required fields
        """
        if isinstance(body, (str, bytes)):
            try:
                body = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise MessageFormatError(f"Message body is not valid JSON: {e}")

        if not isinstance(body, dict):
            raise MessageFormatError(f"Message body must be an object, got {type(body).__name__}")

        search_id = body.get('searchId')
        user_id = body.get('userId')
        if not search_id or not user_id:
            raise MessageFormatError(f"Message body is missing searchId or userId: {body}")

        try:
            schedule_type = ScheduleType(body.get('scheduleType', ScheduleType.SCHEDULED.value))
        except ValueError:
            raise MessageFormatError(f"Unknown scheduleType: {body.get('scheduleType')}")

        return cls(search_id=str(search_id), user_id=str(user_id), schedule_type=schedule_type)


@dataclass
class OutboundMessage:
    """A message ready to be sent to the queue."""
    body: Dict[str, Any]
    message_id: str = field(default_factory=new_message_id)
    group_key: Optional[str] = None
    content_type: str = CONTENT_TYPE_JSON

    @classmethod
    def for_job(cls, job: JobMessage) -> 'OutboundMessage':
        """Wrap a job, grouping by its search so one search is never processed twice at once."""
        return cls(body=job.to_body(), group_key=job.search_id)


@dataclass
class ReceivedMessage:
    """A message delivered under a peek-lock."""
    message_id: str
    body: Dict[str, Any]
    group_key: Optional[str]
    delivery_count: int
    lock_token: str
    locked_until: datetime
    enqueued_at: Optional[datetime] = None
    sequence_number: Optional[int] = None
    content_type: str = CONTENT_TYPE_JSON

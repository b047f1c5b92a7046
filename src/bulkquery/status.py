from enum import Enum


class BatchState(str, Enum):
    CREATED = "Created"
    QUEUED = "Queued"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    NOT_PROCESSED = "Not Processed"

    @property
    def is_failed(self) -> bool:
        return self in (BatchState.FAILED, BatchState.NOT_PROCESSED)


class JobState(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    STALLED = "stalled"
    FINISHED = "finished"

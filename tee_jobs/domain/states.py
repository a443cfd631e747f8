from enum import StrEnum, auto


class JobStatus(StrEnum):
    PENDING = auto()          # Row written, not yet handed to the queue
    QUEUED = auto()           # Queue entry exists, waiting for a worker
    PROCESSING = auto()       # Claimed by a worker, processor call in flight
    COMPLETED = auto()        # Processor succeeded
    FAILED = auto()           # Processor failed, timed out, or recovery gave up
    CANCELLED = auto()        # Cancelled by the owner before a worker claimed it


class JobType(StrEnum):
    REFINEMENT = auto()
    EMBEDDING = auto()
    BOTH = auto()


class JobEvent(StrEnum):
    CREATED = auto()
    QUEUED = auto()
    STARTED = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()
    RECOVERED = auto()
    RETRIED = auto()


class QueueEntryState(StrEnum):
    CREATED = auto()
    RETRY = auto()
    ACTIVE = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


IN_FLIGHT_ENTRY_STATES = (QueueEntryState.CREATED, QueueEntryState.RETRY, QueueEntryState.ACTIVE)
PENDING_ENTRY_STATES = (QueueEntryState.CREATED, QueueEntryState.RETRY)

CANCELLABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED})

# PENDING -> PROCESSING covers a worker claiming the entry before the producer
# has recorded QUEUED. PROCESSING -> PROCESSING is a redelivery of the same
# queue entry after its lease was lost. FAILED -> PROCESSING is the engine
# retrying the job's current entry while attempts remain. QUEUED -> FAILED
# is a delivery refused because the attempt budget is already spent.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.PROCESSING}
    ),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]

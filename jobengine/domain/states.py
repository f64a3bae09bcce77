from enum import IntEnum, StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()          # Created, waiting for a claim
    RUNNING = auto()          # Claimed by exactly one worker
    COMPLETED = auto()        # Handler returned a result
    RETRYING = auto()         # Failed, waiting out the backoff delay
    FAILED = auto()           # Failed, no more retries
    CANCELLED = auto()        # Cancelled before or during execution

TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

class JobPriority(IntEnum):
    # Lower rank is dispatched first
    URGENT = 1
    HIGH = 2
    NORMAL = 3
    LOW = 10

    @classmethod
    def parse(cls, value: "str | int | JobPriority") -> "JobPriority":
        if isinstance(value, JobPriority):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value!r}") from None

class ScheduleSourceType(StrEnum):
    SYSTEM = auto()
    INTEGRATION = auto()
    PLUGIN = auto()
    USER = auto()

class ExecutionStatus(StrEnum):
    RUNNING = auto()
    SUCCESS = auto()
    FAILED = auto()

class TriggerSource(StrEnum):
    SCHEDULER = auto()
    MANUAL = auto()

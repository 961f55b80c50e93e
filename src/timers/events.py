import collections.abc as c
import enum

from timers.config import StrictBaseModel


class Change(enum.StrEnum):
    CREATE = 'create'
    DESTROY = 'destroy'
    REPLACE = 'replace'


class EventStatus(enum.StrEnum):
    STARTED = 'started'
    OUTPUT = 'output'
    DONE = 'done'
    FAILED = 'failed'


class SourceStream(enum.StrEnum):
    STDOUT = 'stdout'
    STDERR = 'stderr'


class TimerEvent(StrictBaseModel):
    """Progress of a single lifecycle step, or one line of output captured while creating."""

    model_config = {'frozen': True}

    id: str
    change: Change
    status: EventStatus
    fingerprint: str | None = None
    elapsed: float | None = None
    error: str | None = None
    source: str | None = None
    source_stream: SourceStream | None = None


EventSink = c.Callable[[TimerEvent], None]

import collections
import collections.abc as c
import contextlib
import enum
import hashlib
import json
import threading
import typing as t

import pydantic

from timers.config import StrictBaseModel


class Status(enum.StrEnum):
    PENDING = 'pending'
    CREATED = 'created'
    FAILED = 'failed'
    DESTROYED = 'destroyed'


def fingerprint(triggers: c.Mapping[str, str]) -> str:
    """SHA-256 over the canonical JSON form of a trigger mapping."""
    canonical = json.dumps(
        dict(triggers),
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


class Instance(StrictBaseModel):
    """
    Persisted state of one timer.

    Every lifecycle transition produces a new instance, use `model_copy(update=...)` and `put` it.
    """

    model_config = {'frozen': True}

    id: str = pydantic.Field(min_length=1)
    triggers: dict[str, str] = {}
    fingerprint: str = ''
    status: Status = Status.PENDING
    last_applied_triggers: dict[str, str] = {}
    error_kind: str | None = None

    @pydantic.model_validator(mode='before')
    @classmethod
    def _derive_fingerprint(cls, data: t.Any) -> t.Any:
        if not isinstance(data, c.Mapping):
            return data

        expected = fingerprint(data.get('triggers') or {})
        given = data.get('fingerprint')
        if given and given != expected:
            raise ValueError(f'Fingerprint {given!r} does not match triggers of {data.get("id")!r}.')

        return {**data, 'fingerprint': expected}

    def with_status(self, status: Status, **update: t.Any) -> 'Instance':
        # round trip through validation so `fingerprint` follows changed triggers
        return Instance.model_validate(
            {**self.model_dump(), 'fingerprint': None, **update, 'status': status}
        )


class InstanceNotFoundError(KeyError):
    def __init__(self, id_: str):
        super().__init__(id_)
        self.id = id_

    def __str__(self):
        return f'No timer instance {self.id!r}.'


class InstanceStore:
    """In-memory instance state with single-writer access per id."""

    def __init__(self, instances: c.Iterable[Instance] = ()):
        self._instances: dict[str, Instance] = {instance.id: instance for instance in instances}
        self._guard = threading.Lock()
        self._locks: collections.defaultdict[str, threading.Lock] = collections.defaultdict(
            threading.Lock
        )
        self._lock_users: collections.Counter[str] = collections.Counter()

    def get(self, id_: str) -> Instance:
        instance = self.find(id_)
        if instance is None:
            raise InstanceNotFoundError(id_)
        return instance

    def find(self, id_: str) -> Instance | None:
        with self._guard:
            return self._instances.get(id_)

    def put(self, instance: Instance) -> None:
        with self._guard:
            self._instances[instance.id] = instance

    def delete(self, id_: str) -> None:
        with self._guard:
            if id_ not in self._instances:
                raise InstanceNotFoundError(id_)
            del self._instances[id_]
            if not self._lock_users[id_]:
                self._locks.pop(id_, None)

    def ids(self) -> list[str]:
        with self._guard:
            return sorted(self._instances)

    @contextlib.contextmanager
    def lock(self, id_: str) -> c.Iterator[None]:
        with self._guard:
            lock = self._locks[id_]
            self._lock_users[id_] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._lock_users[id_] -= 1
                # forget locks of ids nobody waits for and which hold no instance
                if not self._lock_users[id_]:
                    del self._lock_users[id_]
                    if id_ not in self._instances:
                        self._locks.pop(id_, None)

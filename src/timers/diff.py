import collections.abc as c
import enum

from timers.model import Instance, Status, fingerprint


class Action(enum.StrEnum):
    NOOP = 'noop'
    CREATE = 'create'
    REPLACE = 'replace'


def decide(declared_triggers: c.Mapping[str, str], persisted: Instance | None) -> Action:
    """Transition needed to bring `persisted` in line with the declared triggers."""
    if persisted is None or persisted.status != Status.CREATED:
        # failed, destroyed and never committed (pending) instances have no active side effect
        return Action.CREATE

    if fingerprint(declared_triggers) == persisted.fingerprint:
        return Action.NOOP

    return Action.REPLACE


def changed_triggers(old: c.Mapping[str, str], new: c.Mapping[str, str]) -> list[str]:
    return sorted(key for key in old.keys() | new.keys() if old.get(key) != new.get(key))

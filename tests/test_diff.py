"""
Tests for the trigger diff.
"""
import pytest

from timers.diff import Action, changed_triggers, decide
from timers.model import Instance, Status


def persisted(status: Status, triggers: dict[str, str] | None = None) -> Instance:
    return Instance(id='timer', triggers=triggers if triggers is not None else {'delay': '5'}, status=status)


class TestDecide:
    def test_create_when_nothing_persisted(self):
        assert decide({'delay': '5'}, None) == Action.CREATE

    @pytest.mark.parametrize('status', [Status.FAILED, Status.DESTROYED, Status.PENDING])
    def test_create_when_not_created(self, status):
        assert decide({'delay': '5'}, persisted(status)) == Action.CREATE

    def test_noop_when_unchanged(self):
        assert decide({'delay': '5'}, persisted(Status.CREATED)) == Action.NOOP

    def test_replace_when_value_changed(self):
        assert decide({'delay': '10'}, persisted(Status.CREATED)) == Action.REPLACE

    def test_replace_when_key_added(self):
        assert decide({'delay': '5', 'zone': 'a'}, persisted(Status.CREATED)) == Action.REPLACE

    def test_empty_triggers(self):
        assert decide({}, persisted(Status.CREATED, {})) == Action.NOOP
        assert decide({}, persisted(Status.CREATED)) == Action.REPLACE
        assert decide({'delay': '5'}, persisted(Status.CREATED, {})) == Action.REPLACE


class TestChangedTriggers:
    def test_changed_added_and_removed(self):
        old = {'delay': '5', 'zone': 'a', 'same': 'x'}
        new = {'delay': '10', 'region': 'b', 'same': 'x'}
        assert changed_triggers(old, new) == ['delay', 'region', 'zone']

    def test_nothing_changed(self):
        assert changed_triggers({'delay': '5'}, {'delay': '5'}) == []

"""
Tests for declaring timers in a Pulumi stack, run against Pulumi's mocked engine.
"""
import pulumi as p

from timers.config import ComponentConfig


class TimerMocks(p.runtime.Mocks):
    def new_resource(self, args: p.runtime.MockResourceArgs):
        return f'{args.name}-id', args.inputs

    def call(self, args: p.runtime.MockCallArgs):
        return {}


p.runtime.set_mocks(TimerMocks(), preview=False)

from timers.deploy import create_timers  # noqa: E402


@p.runtime.test
def test_create_timers_declares_every_timer():
    config = ComponentConfig.model_validate(
        {
            'timers': [
                {'id': 'timer', 'triggers': {'delay': 5}},
                {'id': 'timer-2', 'triggers': {'delay': 5}},
            ],
        }
    )
    timers = create_timers(config)

    assert sorted(timers) == ['timer', 'timer-2']

    def check(names):
        assert sorted(names) == ['timer', 'timer-2']

    return p.Output.all(*(timer.urn for timer in timers.values())).apply(
        lambda urns: check([urn.rsplit('::', 1)[-1] for urn in urns])
    )

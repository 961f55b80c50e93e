import pulumi as p

from timers.config import ComponentConfig
from timers.provider import TimerResource


def create_timers(
    component_config: ComponentConfig,
    opts: p.ResourceOptions | None = None,
) -> dict[str, TimerResource]:
    # timers without references between them are independent and created in parallel by Pulumi
    timers = {
        timer_config.id: TimerResource(
            timer_config.id,
            triggers=timer_config.triggers,
            command_template=timer_config.command_template,
            executor_config=component_config.executor,
            log_level=component_config.log_level,
            opts=opts,
        )
        for timer_config in component_config.timers
    }

    for name, timer in timers.items():
        p.export(f'{name}-fingerprint', timer.fingerprint)

    return timers

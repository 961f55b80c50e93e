import collections.abc as c
import typing as t

import pydantic

DEFAULT_COMMAND_TEMPLATE = 'sleep ${delay}'
"""Command run on creation of a timer, rendered against its own triggers."""


class StrictBaseModel(pydantic.BaseModel):
    model_config = {'extra': 'forbid'}


def _stringify(item: t.Any) -> t.Any:
    if isinstance(item, bool):
        return str(item).lower()
    if isinstance(item, (int, float)):
        return str(item)
    return item


def _stringify_triggers(value: t.Any) -> t.Any:
    if not isinstance(value, c.Mapping):
        return value

    # stack config hands out numbers for `delay: 5`, triggers are compared as strings
    return {key: _stringify(item) for key, item in value.items()}


class TimerConfig(StrictBaseModel):
    id: str = pydantic.Field(min_length=1)
    triggers: dict[str, str] = {}
    command_template: str = pydantic.Field(
        alias='command-template',
        default=DEFAULT_COMMAND_TEMPLATE,
    )

    model_config = {'populate_by_name': True}

    @pydantic.field_validator('triggers', mode='before')
    @classmethod
    def _coerce_triggers(cls, value: t.Any) -> t.Any:
        return _stringify_triggers(value)


class ExecutorConfig(StrictBaseModel):
    shell: str = '/bin/sh'
    timeout: float | None = pydantic.Field(default=None, gt=0)
    grace_period: float = pydantic.Field(alias='grace-period', default=5.0, ge=0)
    output_tail_lines: int = pydantic.Field(alias='output-tail-lines', default=20, ge=0)
    env: dict[str, str] = {}

    model_config = {'populate_by_name': True}


class ComponentConfig(StrictBaseModel):
    timers: list[TimerConfig] = []
    executor: ExecutorConfig = ExecutorConfig()
    max_workers: int = pydantic.Field(alias='max-workers', default=4, ge=1)
    log_level: str = pydantic.Field(alias='log-level', default='INFO')

    model_config = {'populate_by_name': True}

    @pydantic.field_validator('timers')
    @classmethod
    def _unique_ids(cls, timers: list[TimerConfig]) -> list[TimerConfig]:
        seen = set()
        for timer in timers:
            if timer.id in seen:
                raise ValueError(f'Duplicate timer id {timer.id!r}.')
            seen.add(timer.id)
        return timers

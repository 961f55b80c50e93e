import typing as t

import pulumi as p
from loguru import logger

from timers.config import DEFAULT_COMMAND_TEMPLATE, ExecutorConfig, TimerConfig
from timers.diff import Action, changed_triggers, decide
from timers.engine import TimerEngine
from timers.executor import LocalCommandExecutor
from timers.log import configure_logging
from timers.model import Instance, Status


def _persisted_instance(id_: str, olds: t.Mapping[str, t.Any]) -> Instance | None:
    if not olds.get('status'):
        return None

    return Instance(
        id=id_,
        triggers=olds.get('triggers') or {},
        status=olds['status'],
        last_applied_triggers=olds.get('last_applied_triggers') or {},
    )


class TimerProvider(p.dynamic.ResourceProvider):
    """
    Dynamic provider running the creation command of a timer, changed triggers replace it.

    Runs inside the Pulumi engine's provider process, all state lives in the Pulumi state.
    """

    def __init__(self, executor_config: dict[str, t.Any] | None = None, log_level: str = 'INFO'):
        super().__init__()
        self.executor_config = executor_config or {}
        self.log_level = log_level

    def _engine(self) -> TimerEngine:
        configure_logging(self.log_level)
        config = ExecutorConfig.model_validate(self.executor_config)
        return TimerEngine(executor=LocalCommandExecutor.from_config(config))

    def create(self, props):
        declaration = TimerConfig(
            id=props['name'],
            triggers=props.get('triggers') or {},
            command_template=props.get('command_template') or DEFAULT_COMMAND_TEMPLATE,
        )
        result = self._engine().apply(declaration)
        if result.error is not None:
            # Pulumi only shows the traceback, so the output tails have to be in the message
            raise result.error.with_diagnostics() from result.error

        instance = Instance(
            id=declaration.id,
            triggers=declaration.triggers,
            status=Status.CREATED,
            last_applied_triggers=declaration.triggers,
        )
        return p.dynamic.CreateResult(
            id_=instance.id,
            outs={
                **props,
                'triggers': instance.triggers,
                'fingerprint': instance.fingerprint,
                'status': str(instance.status),
                'last_applied_triggers': instance.last_applied_triggers,
            },
        )

    def diff(self, _id, _olds, _news):
        persisted = _persisted_instance(_id, _olds)
        declared = TimerConfig(id=_id, triggers=_news.get('triggers') or {})

        if decide(declared.triggers, persisted) == Action.NOOP:
            return p.dynamic.DiffResult(changes=False)

        changed = changed_triggers(persisted.triggers if persisted else {}, declared.triggers)
        return p.dynamic.DiffResult(
            changes=True,
            replaces=[f'triggers.{key}' for key in changed] or ['triggers'],
            delete_before_replace=True,
        )

    def delete(self, _id, _props):
        # no teardown command, the instance ends with its Pulumi state entry
        logger.bind(timer=_id).info('Destroyed')


class TimerResource(p.dynamic.Resource):
    """
    Delay barrier which runs a blocking local command once on creation, `sleep ${delay}` by default.
    """

    fingerprint: p.Output[str]
    status: p.Output[str]
    last_applied_triggers: p.Output[dict[str, str]]

    def __init__(
        self,
        name: str,
        triggers: p.Input[t.Mapping[str, p.Input[str]]],
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        executor_config: ExecutorConfig | None = None,
        log_level: str = 'INFO',
        opts: p.ResourceOptions | None = None,
    ):
        provider = TimerProvider(
            (executor_config or ExecutorConfig()).model_dump(by_alias=True),
            log_level,
        )
        super().__init__(
            provider,
            name,
            {
                'name': name,
                'triggers': triggers,
                'command_template': command_template,
                'fingerprint': None,
                'status': None,
                'last_applied_triggers': None,
            },
            opts,
        )

import collections
import collections.abc as c
import concurrent.futures
import threading

from loguru import logger

from timers.config import ComponentConfig, StrictBaseModel, TimerConfig
from timers.diff import Action, changed_triggers, decide
from timers.events import Change, EventSink, EventStatus, SourceStream, TimerEvent
from timers.executor import (
    ExecutionError,
    ExecutionResult,
    LocalCommandExecutor,
    render_command,
)
from timers.model import Instance, InstanceStore, Status


class ApplyResult(StrictBaseModel):
    model_config = {'frozen': True, 'arbitrary_types_allowed': True}

    id: str
    action: Action
    status: Status
    fingerprint: str
    executed: bool = False
    result: ExecutionResult | None = None
    error: ExecutionError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TimerEngine:
    """
    Drives the lifecycle of timer instances: diff, then destroy when replacing, then create.

    Instances are independent, `apply_all` evaluates them on a bounded worker pool while every single
    instance is processed strictly sequentially under its store lock. Nothing is retried, a failed
    apply can simply be repeated.
    """

    def __init__(
        self,
        store: InstanceStore | None = None,
        executor: LocalCommandExecutor | None = None,
        *,
        max_workers: int = 4,
        on_event: EventSink | None = None,
    ):
        self.store = store if store is not None else InstanceStore()
        self.executor = executor if executor is not None else LocalCommandExecutor()
        self.max_workers = max_workers
        self.on_event = on_event

    @classmethod
    def from_config(
        cls,
        config: ComponentConfig,
        store: InstanceStore | None = None,
        on_event: EventSink | None = None,
    ) -> 'TimerEngine':
        return cls(
            store,
            LocalCommandExecutor.from_config(config.executor),
            max_workers=config.max_workers,
            on_event=on_event,
        )

    def plan(self, declaration: TimerConfig) -> Action:
        return decide(declaration.triggers, self.store.find(declaration.id))

    def apply(
        self,
        declaration: TimerConfig,
        cancel: threading.Event | None = None,
    ) -> ApplyResult:
        # configuration errors surface before any lifecycle step
        render_command(declaration.command_template, declaration.triggers)
        log = logger.bind(timer=declaration.id)

        with self.store.lock(declaration.id):
            persisted = self.store.find(declaration.id)
            action = decide(declaration.triggers, persisted)

            if persisted is not None and action == Action.NOOP:
                log.debug(f'Up to date at {persisted.fingerprint[:12]}')
                return ApplyResult(
                    id=persisted.id,
                    action=action,
                    status=persisted.status,
                    fingerprint=persisted.fingerprint,
                )

            declared = Instance(
                id=declaration.id,
                triggers=declaration.triggers,
                last_applied_triggers=persisted.last_applied_triggers if persisted else {},
            )

            if persisted is None or action == Action.CREATE:
                return self._create(declaration, declared, persisted, action, cancel)

            changed = changed_triggers(persisted.triggers, declared.triggers)
            log.info(f'Triggers changed ({", ".join(changed)}), replacing')
            self._emit(declared.id, Change.REPLACE, EventStatus.STARTED, declared.fingerprint)
            # nothing to tear down, the old instance stays in the store until the new one is created
            self._emit(declared.id, Change.DESTROY, EventStatus.STARTED, persisted.fingerprint)
            self._emit(declared.id, Change.DESTROY, EventStatus.DONE, persisted.fingerprint)

            result = self._create(declaration, declared, persisted, action, cancel)
            self._emit(
                declared.id,
                Change.REPLACE,
                EventStatus.DONE if result.ok else EventStatus.FAILED,
                declared.fingerprint,
                error=str(result.error) if result.error else None,
            )
            return result

    def apply_all(
        self,
        declarations: c.Sequence[TimerConfig],
        *,
        cancel: threading.Event | None = None,
        prune: bool = False,
    ) -> list[ApplyResult]:
        """
        Apply independent declarations concurrently, results are in declaration order.

        With `prune`, stored instances which are no longer declared are destroyed afterwards. A
        `KeyboardInterrupt` cancels the running commands and is re-raised once every instance settled.
        """
        counts = collections.Counter(declaration.id for declaration in declarations)
        duplicates = sorted(id_ for id_, count in counts.items() if count > 1)
        if duplicates:
            raise ValueError(f'Duplicate timer ids: {", ".join(duplicates)}.')

        for declaration in declarations:
            render_command(declaration.command_template, declaration.triggers)

        cancel = cancel if cancel is not None else threading.Event()
        interrupted = False

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix='timer'
        ) as pool:
            futures = [pool.submit(self.apply, declaration, cancel) for declaration in declarations]
            try:
                concurrent.futures.wait(futures)
            except KeyboardInterrupt:
                logger.warning('Interrupted, canceling running timers')
                interrupted = True
                cancel.set()
                concurrent.futures.wait(futures)

        results = [future.result() for future in futures]

        if prune and not interrupted:
            for id_ in sorted(set(self.store.ids()) - set(counts)):
                if self.store.get(id_).status != Status.DESTROYED:
                    self.destroy(id_)

        self._log_summary(results)

        if interrupted:
            raise KeyboardInterrupt
        return results

    def destroy(self, id_: str, reason: str = 'no longer declared') -> Instance:
        """Mark an instance destroyed, this resource has no teardown command."""
        with self.store.lock(id_):
            instance = self.store.get(id_)
            logger.bind(timer=id_).info(f'Destroying, {reason}')

            self._emit(id_, Change.DESTROY, EventStatus.STARTED, instance.fingerprint)
            destroyed = instance.with_status(Status.DESTROYED)
            self.store.put(destroyed)
            self._emit(id_, Change.DESTROY, EventStatus.DONE, instance.fingerprint)
            return destroyed

    def taint(self, id_: str) -> Instance:
        return self.destroy(id_, reason='tainted')

    def _create(
        self,
        declaration: TimerConfig,
        declared: Instance,
        persisted: Instance | None,
        action: Action,
        cancel: threading.Event | None,
    ) -> ApplyResult:
        log = logger.bind(timer=declared.id)
        self._emit(declared.id, Change.CREATE, EventStatus.STARTED, declared.fingerprint)

        def forward_output(stream: SourceStream, line: str) -> None:
            self._emit(
                declared.id,
                Change.CREATE,
                EventStatus.OUTPUT,
                declared.fingerprint,
                source=line,
                source_stream=stream,
            )

        try:
            result = self.executor.execute(
                declared,
                declaration.command_template,
                cancel=cancel,
                on_output=forward_output,
            )
        except ExecutionError as e:
            log.error(f'Creation failed at fingerprint {declared.fingerprint}: {e.describe()}')
            self._emit(
                declared.id,
                Change.CREATE,
                EventStatus.FAILED,
                declared.fingerprint,
                elapsed=e.elapsed,
                error=str(e),
            )

            # a created predecessor is kept as is, otherwise record the failure
            if persisted is None or persisted.status != Status.CREATED:
                self.store.put(declared.with_status(Status.FAILED, error_kind=e.kind))

            return ApplyResult(
                id=declared.id,
                action=action,
                status=Status.FAILED,
                fingerprint=declared.fingerprint,
                executed=e.exit_code is not None,
                error=e,
            )

        created = declared.with_status(
            Status.CREATED,
            last_applied_triggers=declared.triggers,
            error_kind=None,
        )
        self.store.put(created)
        self._emit(
            declared.id,
            Change.CREATE,
            EventStatus.DONE,
            created.fingerprint,
            elapsed=result.elapsed,
        )
        return ApplyResult(
            id=created.id,
            action=action,
            status=created.status,
            fingerprint=created.fingerprint,
            executed=True,
            result=result,
        )

    def _emit(
        self,
        id_: str,
        change: Change,
        status: EventStatus,
        fingerprint: str | None,
        **details,
    ) -> None:
        if self.on_event is None:
            return
        self.on_event(
            TimerEvent(id=id_, change=change, status=status, fingerprint=fingerprint, **details)
        )

    @staticmethod
    def _log_summary(results: c.Sequence[ApplyResult]) -> None:
        created = sum(1 for r in results if r.ok and r.action == Action.CREATE)
        replaced = sum(1 for r in results if r.ok and r.action == Action.REPLACE)
        unchanged = sum(1 for r in results if r.action == Action.NOOP)
        failed = [r.id for r in results if not r.ok]

        logger.info(
            f'Apply complete: {created} created, {replaced} replaced, {unchanged} unchanged, '
            f'{len(failed)} failed'
        )
        if failed:
            logger.error(f'Failed timers: {", ".join(failed)}')

import collections
import collections.abc as c
import contextlib
import os
import shlex
import signal
import string
import subprocess
import threading
import time
import typing as t

from loguru import logger

from timers.config import DEFAULT_COMMAND_TEMPLATE, ExecutorConfig, StrictBaseModel
from timers.events import SourceStream
from timers.model import Instance

OutputSink = c.Callable[[SourceStream, str], None]


class TemplateError(ValueError):
    pass


class ExecutionError(Exception):
    """Base of all failures of the creation command, carries what was captured until then."""

    kind = 'execution'

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        elapsed: float | None = None,
        stdout_tail: c.Sequence[str] = (),
        stderr_tail: c.Sequence[str] = (),
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.elapsed = elapsed
        self.stdout_tail = list(stdout_tail)
        self.stderr_tail = list(stderr_tail)

    def describe(self) -> str:
        lines = [f'{self.kind}: {self}']
        if self.stderr_tail:
            lines += ['stderr:', *(f'  {line}' for line in self.stderr_tail)]
        if self.stdout_tail:
            lines += ['stdout:', *(f'  {line}' for line in self.stdout_tail)]
        return '\n'.join(lines)

    def with_diagnostics(self) -> 'ExecutionError':
        """Same error, with the captured output tails as part of its message."""
        return type(self)(
            self.describe(),
            command=self.command,
            exit_code=self.exit_code,
            elapsed=self.elapsed,
            stdout_tail=self.stdout_tail,
            stderr_tail=self.stderr_tail,
        )


class LaunchFailedError(ExecutionError):
    kind = 'launch_failed'


class NonZeroExitError(ExecutionError):
    kind = 'non_zero_exit'


class CommandTimeoutError(ExecutionError):
    kind = 'timeout'


class CommandCanceledError(ExecutionError):
    kind = 'canceled'


class TriggerTemplate(string.Template):
    # trigger names such as `wait-seconds` are valid placeholders
    idpattern = r'[_a-z][_a-z0-9-]*'


def render_command(template: str, triggers: c.Mapping[str, str]) -> str:
    """
    Substitute `$name` / `${name}` placeholders with the shell-quoted trigger values.

    Only the instance's own triggers are visible to the template.
    """
    quoted = {key: shlex.quote(value) for key, value in triggers.items()}
    try:
        return TriggerTemplate(template).substitute(quoted)
    except KeyError as e:
        raise TemplateError(
            f'Command template {template!r} references unknown trigger {e.args[0]!r}.'
        ) from e
    except ValueError as e:
        raise TemplateError(f'Invalid command template {template!r}: {e}') from e


class ExecutionResult(StrictBaseModel):
    command: str
    exit_code: int
    elapsed: float
    stdout_tail: list[str] = []
    stderr_tail: list[str] = []


class LocalCommandExecutor:
    """
    Runs the creation command of a timer in the local shell and blocks until it finished.

    The command runs in its own process session, so timeouts and cancellation take down everything
    it spawned.
    """

    def __init__(
        self,
        *,
        shell: str = '/bin/sh',
        timeout: float | None = None,
        grace_period: float = 5.0,
        output_tail_lines: int = 20,
        env: c.Mapping[str, str] | None = None,
        poll_interval: float = 0.02,
    ):
        self.shell = shell
        self.timeout = timeout
        self.grace_period = grace_period
        self.output_tail_lines = output_tail_lines
        self.env = dict(env or {})
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: ExecutorConfig) -> 'LocalCommandExecutor':
        return cls(
            shell=config.shell,
            timeout=config.timeout,
            grace_period=config.grace_period,
            output_tail_lines=config.output_tail_lines,
            env=config.env,
        )

    def execute(
        self,
        instance: Instance,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        *,
        cancel: threading.Event | None = None,
        on_output: OutputSink | None = None,
    ) -> ExecutionResult:
        command = render_command(command_template, instance.triggers)
        log = logger.bind(timer=instance.id)

        if cancel is not None and cancel.is_set():
            raise CommandCanceledError('Canceled before launch.', command=command, elapsed=0.0)

        log.info(f'Running {command!r}')
        start = time.monotonic()
        try:
            process = subprocess.Popen(
                [self.shell, '-c', command],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._environment(),
                text=True,
                errors='replace',
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise LaunchFailedError(
                f'Could not launch {self.shell!r}: {e}',
                command=command,
                elapsed=time.monotonic() - start,
            ) from e

        stdout_tail: collections.deque[str] = collections.deque(maxlen=self.output_tail_lines)
        stderr_tail: collections.deque[str] = collections.deque(maxlen=self.output_tail_lines)
        readers = [
            threading.Thread(
                target=self._stream,
                args=(process.stdout, SourceStream.STDOUT, stdout_tail, log, on_output),
                daemon=True,
            ),
            threading.Thread(
                target=self._stream,
                args=(process.stderr, SourceStream.STDERR, stderr_tail, log, on_output),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        with process:
            try:
                error_type = self._wait(process, start, cancel or threading.Event(), log)
            except BaseException:
                self._terminate(process, log)
                raise
            finally:
                for reader in readers:
                    reader.join(timeout=self.grace_period + 1)

        elapsed = time.monotonic() - start
        captured: dict[str, t.Any] = {
            'command': command,
            'exit_code': process.returncode,
            'elapsed': elapsed,
            'stdout_tail': list(stdout_tail),
            'stderr_tail': list(stderr_tail),
        }

        if error_type is CommandTimeoutError:
            raise CommandTimeoutError(f'Command timed out after {self.timeout}s.', **captured)
        if error_type is CommandCanceledError:
            raise CommandCanceledError(f'Command canceled after {elapsed:.1f}s.', **captured)
        if process.returncode != 0:
            raise NonZeroExitError(f'Command exited with status {process.returncode}.', **captured)

        log.info(f'Command finished after {elapsed:.1f}s')
        return ExecutionResult(**captured)

    def _environment(self) -> dict[str, str] | None:
        if not self.env:
            return None
        return {**os.environ, **self.env}

    def _wait(
        self,
        process: subprocess.Popen,
        start: float,
        cancel: threading.Event,
        log: t.Any,
    ) -> type[ExecutionError] | None:
        while process.poll() is None:
            if self.timeout is not None and time.monotonic() - start >= self.timeout:
                log.warning(f'Command exceeded timeout of {self.timeout}s, terminating')
                self._terminate(process, log)
                return CommandTimeoutError

            if cancel.wait(self.poll_interval):
                log.warning('Cancellation requested, terminating command')
                self._terminate(process, log)
                return CommandCanceledError

        return None

    def _terminate(self, process: subprocess.Popen, log: t.Any) -> None:
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            process.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            log.warning(f'Command ignored SIGTERM for {self.grace_period}s, killing')
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            process.wait()

    @staticmethod
    def _stream(
        source: t.IO[str] | None,
        stream: SourceStream,
        tail: collections.deque[str],
        log: t.Any,
        on_output: OutputSink | None,
    ) -> None:
        if source is None:
            return

        try:
            for raw in source:
                line = raw.rstrip('\n')
                tail.append(line)
                log.debug(f'[{stream}] {line}')
                if on_output is None:
                    continue
                # the pipe must keep draining whatever the sink does
                try:
                    on_output(stream, line)
                except Exception:
                    log.exception(f'Output sink failed, no longer forwarding {stream}')
                    on_output = None
        except (OSError, ValueError):
            # pipe closed underneath us after the process was killed
            return

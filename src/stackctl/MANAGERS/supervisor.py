# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
A small process supervisor for the long-running workers of a container,
following supervisord's program states and restart rules.
"""
import logging
import os
import signal
import threading
import time
from enum import Enum
from typing import Callable, Dict, Optional

from ..MODELS.supervisor_config import AutoRestart, ProgramDefinition, SupervisorConfig
from ..RUNNERS.process_runner import ProcessRunner

logger = logging.getLogger(__name__)


class ProgramState(str, Enum):
    """Lifecycle state of a supervised program."""

    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    BACKOFF = "BACKOFF"
    EXITED = "EXITED"
    FATAL = "FATAL"


class SupervisedProgram:
    """Runtime bookkeeping for one program."""

    def __init__(self, definition: ProgramDefinition, log_dir: Optional[str] = None):
        self.definition = definition
        log_file = os.path.join(log_dir, f"{definition.name}.log") if log_dir else None
        self.runner = ProcessRunner(definition.name, log_file=log_file)
        self.state = ProgramState.STOPPED
        self.backoff = 0
        self.next_start_at: Optional[float] = None
        self.exit_code: Optional[int] = None


class Supervisor:
    """
    Starts programs in priority order and keeps them alive.

    A program that exits before ``startsecs`` goes to BACKOFF and is retried
    after 1, 2, 3... seconds, up to ``startretries`` times, then is FATAL.
    A program that exits after a successful start is EXITED and restarted
    according to ``autorestart``.
    """

    def __init__(
        self,
        config: SupervisorConfig,
        log_dir: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
        tick: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.environ = dict(os.environ) if environ is None else dict(environ)
        self.tick_interval = tick
        self.clock = clock
        self.programs: Dict[str, SupervisedProgram] = {
            p.name: SupervisedProgram(p, log_dir) for p in config.ordered()
        }
        self._stop = threading.Event()

    def start_all(self) -> None:
        for program in self.programs.values():
            if program.definition.autostart:
                self._spawn(program)

    def _spawn(self, program: SupervisedProgram) -> None:
        definition = program.definition
        env = dict(self.environ)
        env.update(definition.environment)
        program.next_start_at = None
        program.exit_code = None
        try:
            program.runner.start(
                definition.command,
                env=env,
                working_dir=definition.directory,
                user=definition.user,
            )
        except OSError as e:
            logger.error("spawnerr: can't start %s: %s", definition.name, e)
            self._backoff(program, self.clock())
            return

        logger.info("spawned: '%s' with pid %d", definition.name, program.runner.process.pid)
        program.state = ProgramState.STARTING
        if definition.startsecs <= 0:
            self._mark_running(program)

    def _mark_running(self, program: SupervisedProgram) -> None:
        program.state = ProgramState.RUNNING
        program.backoff = 0
        logger.info("success: %s entered RUNNING state", program.definition.name)

    def _backoff(self, program: SupervisedProgram, now: float) -> None:
        definition = program.definition
        program.backoff += 1
        if program.backoff > definition.startretries:
            program.state = ProgramState.FATAL
            logger.error("gave up: %s entered FATAL state, too many start retries too quickly", definition.name)
            return
        program.state = ProgramState.BACKOFF
        program.next_start_at = now + program.backoff
        logger.info("%s entered BACKOFF state (retry %d of %d)", definition.name,
                    program.backoff, definition.startretries)

    def tick(self, now: Optional[float] = None) -> None:
        """
        One supervision pass over every program.
        """
        now = self.clock() if now is None else now
        for program in self.programs.values():
            definition = program.definition
            runner = program.runner

            if program.state == ProgramState.STARTING:
                if not runner.is_running():
                    program.exit_code = runner.get_exit_code()
                    logger.warning("exited: %s (exit status %s; not expected)", definition.name, program.exit_code)
                    self._backoff(program, now)
                elif runner.uptime() >= definition.startsecs:
                    self._mark_running(program)

            elif program.state == ProgramState.RUNNING:
                if runner.is_running():
                    continue
                program.exit_code = runner.get_exit_code()
                expected = program.exit_code in definition.exitcodes
                program.state = ProgramState.EXITED
                logger.info("exited: %s (exit status %s; %s)", definition.name, program.exit_code,
                            "expected" if expected else "not expected")
                if definition.autorestart == AutoRestart.ALWAYS or (
                    definition.autorestart == AutoRestart.UNEXPECTED and not expected
                ):
                    self._spawn(program)

            elif program.state == ProgramState.BACKOFF:
                if program.next_start_at is not None and now >= program.next_start_at:
                    self._spawn(program)

    def stop_all(self) -> None:
        """
        Stops programs in reverse start order.
        """
        for program in reversed(list(self.programs.values())):
            if program.runner.is_running():
                logger.info("stopping: %s", program.definition.name)
                program.runner.stop(timeout=program.definition.stopwaitsecs)
            program.state = ProgramState.STOPPED

    def request_stop(self, *_args) -> None:
        self._stop.set()

    def run_forever(self, install_signal_handlers: bool = True) -> None:
        """
        Starts everything and supervises until SIGTERM/SIGINT or
        :meth:`request_stop`, then stops all programs.
        """
        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self.request_stop)
            signal.signal(signal.SIGINT, self.request_stop)

        self.start_all()
        try:
            while not self._stop.is_set():
                self.tick()
                self._stop.wait(self.tick_interval)
        finally:
            self.stop_all()

    def status(self) -> Dict[str, str]:
        return {name: program.state.value for name, program in self.programs.items()}

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
Health monitoring for services: Docker-style health check commands, the
starting/healthy/unhealthy state machine, waiting for a service to settle,
and restart policy management with exponential backoff.
"""
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_delay,
    stop_never,
    wait_fixed,
)

from ..MODELS.service_definition import HealthCheck, RestartPolicyCondition
from .process_manager import ProcessManager

logger = logging.getLogger(__name__)

OUTPUT_LIMIT = 500


class HealthStatus(str, Enum):
    """Health status of a service."""

    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NONE = "none"  # No health check configured


@dataclass
class ProbeResult:
    """Outcome of a single health check run."""

    success: bool
    exit_code: Optional[int] = None
    output: str = ""
    timed_out: bool = False


@dataclass
class ServiceHealth:
    """Health information for a service."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: int = 0
    last_check: Optional[str] = None
    last_output: str = ""
    restart_count: int = 0
    last_restart: Optional[str] = None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthCheckRunner:
    """
    Runs a health check command once per call.
    """

    def __init__(
        self,
        health_check: HealthCheck,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        """
        :param health_check: The probe definition.
        :param env: Environment for the probe; None inherits the current one.
        :param cwd: Working directory for the probe.
        """
        self.health_check = health_check
        self.env = env
        self.cwd = cwd

    def run_once(self) -> ProbeResult:
        """
        Runs the probe. Timeouts and commands that cannot be executed count
        as failures, never as exceptions.
        """
        test = self.health_check.test
        if not test or test[0] == "NONE":
            return ProbeResult(success=True, exit_code=0)

        use_shell = False
        if test[0] == "CMD":
            command: Union[List[str], str] = test[1:]
        elif test[0] == "CMD-SHELL":
            command = " ".join(test[1:])
            use_shell = True
        else:
            command = test

        if not command:
            return ProbeResult(success=False, output="Empty health check command")

        try:
            result = subprocess.run(
                command,
                shell=use_shell,
                env=self.env,
                cwd=self.cwd,
                capture_output=True,
                timeout=self.health_check.timeout,
                text=True,
            )
        except subprocess.TimeoutExpired:
            return ProbeResult(success=False, output="Health check timed out", timed_out=True)
        except OSError as e:
            return ProbeResult(success=False, output=str(e))

        output = result.stdout or result.stderr or ""
        if result.returncode != 0 and not output:
            output = f"Exit code: {result.returncode}"
        return ProbeResult(
            success=result.returncode == 0,
            exit_code=result.returncode,
            output=output[:OUTPUT_LIMIT],
        )


class HealthTracker:
    """
    Derives a service's health status from successive probe results.

    The status starts as ``starting``. A success makes it ``healthy`` and
    resets the failing streak. Failures inside the start period are not
    counted; once ``retries`` counted failures occur in a row the status is
    ``unhealthy``. A stopped service is ``unhealthy``.
    """

    def __init__(self, health_check: Optional[HealthCheck],
                 clock: Callable[[], float] = time.monotonic):
        self.health_check = health_check
        self.clock = clock
        self.health = ServiceHealth()
        self.ever_healthy = False
        self.reset()

    @property
    def status(self) -> HealthStatus:
        return self.health.status

    def reset(self) -> None:
        """Starts tracking afresh, e.g. after a (re)start of the service."""
        restart_count = self.health.restart_count
        last_restart = self.health.last_restart
        self.health = ServiceHealth(restart_count=restart_count, last_restart=last_restart)
        if self.health_check is not None and not self.health_check.disabled:
            self.health.status = HealthStatus.STARTING
        self.ever_healthy = False
        self.started_at = self.clock()

    def in_start_period(self) -> bool:
        if self.health_check is None:
            return False
        return self.clock() - self.started_at < self.health_check.start_period

    def record(self, result: ProbeResult) -> HealthStatus:
        """
        Folds one probe result into the status.
        """
        health = self.health
        health.last_check = _utc_now()
        health.last_output = result.output

        if self.health_check is None or self.health_check.disabled:
            health.status = HealthStatus.NONE
            return health.status

        if result.success:
            health.status = HealthStatus.HEALTHY
            health.failing_streak = 0
            self.ever_healthy = True
            return health.status

        if self.in_start_period():
            return health.status

        health.failing_streak += 1
        if health.failing_streak >= self.health_check.retries:
            health.status = HealthStatus.UNHEALTHY
        return health.status

    def mark_stopped(self, exit_code: Optional[int] = None) -> HealthStatus:
        self.health.status = HealthStatus.UNHEALTHY
        self.health.last_output = f"Process exited with code {exit_code}"
        return self.health.status


def wait_until_settled(
    runner: HealthCheckRunner,
    tracker: HealthTracker,
    is_running: Optional[Callable[[], bool]] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthStatus:
    """
    Probes on the check's interval until the tracker leaves ``starting``.

    The first probe runs immediately. Returns ``healthy`` or ``unhealthy``,
    or ``starting`` if ``timeout`` seconds pass first.

    :param is_running: Reports whether the probed process is still alive;
        a dead process settles as ``unhealthy`` without probing.
    """
    health_check = tracker.health_check
    if health_check is None or health_check.disabled:
        return HealthStatus.NONE

    def attempt() -> HealthStatus:
        if is_running is not None and not is_running():
            return tracker.mark_stopped()
        status = tracker.record(runner.run_once())
        logger.debug("Probe result: %s (streak %d)", status.value, tracker.health.failing_streak)
        return status

    retrying = Retrying(
        retry=retry_if_result(lambda status: status == HealthStatus.STARTING),
        wait=wait_fixed(health_check.interval),
        stop=stop_after_delay(timeout) if timeout is not None else stop_never,
        sleep=sleep,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    return retrying(attempt)


class HealthMonitor:
    """
    Monitors the health of running services in a background thread and
    applies their restart policies.
    Calls ``on_failure`` when a service turns unhealthy.
    """

    def __init__(
        self,
        managers: Dict[str, ProcessManager],
        trackers: Optional[Dict[str, HealthTracker]] = None,
        tick: float = 0.5,
        on_failure: Optional[Callable[[str], None]] = None,
        max_restart_delay: float = 300,
    ):
        """
        Initializes the health monitor.

        :param managers: Managers for the services to monitor.
        :param trackers: Existing trackers to continue from, by service name.
        :param tick: Seconds between scheduler passes.
        :param on_failure: Callback when a service fails.
        :param max_restart_delay: Upper bound for the restart backoff.
        """
        self.managers = managers
        self.tick = tick
        self.on_failure = on_failure
        self.max_restart_delay = max_restart_delay

        self._trackers: Dict[str, HealthTracker] = dict(trackers or {})
        for name, manager in managers.items():
            self._trackers.setdefault(name, HealthTracker(manager.service_def.health_check))

        self._next_check: Dict[str, float] = {}
        self._next_restart: Dict[str, float] = {}
        self._restart_delays: Dict[str, float] = {}
        self._stop = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def start(self):
        """
        Starts the health monitoring thread.
        """
        self._stop.clear()
        self.thread = threading.Thread(target=self._monitor_loop, name="health-monitor", daemon=True)
        self.thread.start()

    def stop(self):
        """
        Stops the health monitoring thread.
        """
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=max(self.tick * 2, 1))

    def get_health(self, service_name: str) -> ServiceHealth:
        """
        Get the health information of a service.
        """
        tracker = self._trackers.get(service_name)
        return tracker.health if tracker else ServiceHealth()

    def _monitor_loop(self):
        while not self._stop.is_set():
            for name in list(self.managers):
                try:
                    self.check_once(name)
                except Exception:
                    logger.exception("Health monitoring of %s failed", name)
            self._stop.wait(self.tick)

    def check_once(self, name: str, now: Optional[float] = None) -> HealthStatus:
        """
        One scheduler pass for a single service: restart it if it exited
        and its policy says so, or run its probe when one is due.
        """
        now = time.monotonic() if now is None else now
        manager = self.managers[name]
        tracker = self._trackers[name]
        hc = manager.service_def.health_check

        if manager.started and not manager.runner.is_running():
            exit_code = manager.runner.get_exit_code()
            previous = tracker.status
            tracker.mark_stopped(exit_code)
            if previous != HealthStatus.UNHEALTHY:
                logger.warning("Service %s exited with code %s", name, exit_code)
            if self._should_restart(manager, exit_code):
                self._schedule_restart(name, now)
            elif previous != HealthStatus.UNHEALTHY and self.on_failure:
                self.on_failure(name)
            return tracker.status

        if hc is None or hc.disabled:
            return tracker.status
        if now < self._next_check.get(name, 0):
            return tracker.status

        previous = tracker.status
        status = tracker.record(
            HealthCheckRunner(hc, env=manager.environment(), cwd=manager.probe_cwd()).run_once()
        )
        self._next_check[name] = now + hc.interval

        if status == HealthStatus.HEALTHY:
            self._restart_delays[name] = 0
        if status != previous:
            logger.info("Service %s is %s", name, status.value)
            if status == HealthStatus.UNHEALTHY and self.on_failure:
                self.on_failure(name)
        return status

    def _should_restart(self, manager: ProcessManager, exit_code: Optional[int]) -> bool:
        """
        Determine if a service should be restarted based on its policy.
        """
        policy = manager.service_def.restart_policy
        tracker = self._trackers[manager.service_def.name]

        if policy.max_retries > 0 and tracker.health.restart_count >= policy.max_retries:
            return False
        if policy.condition in (RestartPolicyCondition.ALWAYS, RestartPolicyCondition.UNLESS_STOPPED):
            return True
        if policy.condition == RestartPolicyCondition.ON_FAILURE:
            return exit_code is not None and exit_code != 0
        return False

    def _schedule_restart(self, name: str, now: float) -> None:
        """
        Restarts the service once its backoff delay has passed; the delay
        doubles after each restart up to ``max_restart_delay``.
        """
        manager = self.managers[name]
        if name not in self._next_restart:
            base_delay = manager.service_def.restart_policy.delay or 1.0
            delay = self._restart_delays.get(name) or base_delay
            self._next_restart[name] = now + delay
            self._restart_delays[name] = delay
            logger.info("Restarting %s in %.1fs", name, delay)
            return

        if now < self._next_restart[name]:
            return

        del self._next_restart[name]
        tracker = self._trackers[name]
        logger.info("Restarting service %s (attempt %d)", name, tracker.health.restart_count + 1)
        manager.stop()
        manager.start()
        tracker.health.restart_count += 1
        tracker.health.last_restart = _utc_now()
        tracker.reset()
        self._next_check.pop(name, None)
        self._restart_delays[name] = min(self._restart_delays[name] * 2, self.max_restart_delay)

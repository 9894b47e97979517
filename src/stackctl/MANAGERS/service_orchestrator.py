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
Orchestration for multiple services, gating each start on the conditions
its dependencies declare.
"""
import logging
import time
from typing import Callable, Dict, Optional

from ..errors import DependencyFailedError
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import DependencyCondition, ServiceDependency
from ..RUNNERS.dependency_resolver import DependencyResolver
from .health_monitor import (
    HealthCheckRunner,
    HealthMonitor,
    HealthStatus,
    HealthTracker,
    wait_until_settled,
)
from .process_manager import ProcessManager

logger = logging.getLogger(__name__)

BLOCKED = "blocked"
PENDING = "pending"
SKIPPED = "skipped"


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 base_dir: str = ".",
                 base_env: Optional[Dict[str, str]] = None,
                 completion_timeout: Optional[float] = None,
                 health_timeout: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initializes the orchestrator.

        :param config: Configuration for all services.
        :param base_dir: Working directory for the services.
        :param base_env: Environment the services' variables are layered on.
        :param completion_timeout: Upper bound when waiting for a
            ``service_completed_successfully`` dependency; None waits forever.
        :param health_timeout: Upper bound when waiting for a dependency to
            settle; None relies on the probe's retry budget alone.
        :param sleep: Sleep function used between probes.
        """
        self.config = config
        self.base_dir = base_dir
        self.completion_timeout = completion_timeout
        self.health_timeout = health_timeout
        self.sleep = sleep
        self.resolver = DependencyResolver()
        self.order = self.resolver.resolve_order(config)

        self.managers: Dict[str, ProcessManager] = {
            name: ProcessManager(svc_def, base_dir, base_env=base_env)
            for name, svc_def in config.services.items()
        }
        self.trackers: Dict[str, HealthTracker] = {
            name: HealthTracker(svc_def.health_check)
            for name, svc_def in config.services.items()
        }
        self.blocked: Dict[str, str] = {}
        self.skipped = set()
        self.health_monitor = HealthMonitor(
            self.managers, trackers=self.trackers, on_failure=self._handle_service_failure
        )

    def up(self, monitor: bool = True):
        """
        Starts all services in dependency order. A service whose dependency
        does not reach its required condition is not started, nor is anything
        that depends on it; the remaining services still start.

        :param monitor: Keep tracking health in the background afterwards.
        :raises DependencyFailedError: If any service was held back or
            could not be spawned.
        """
        logger.info("Starting services in order: %s", ", ".join(self.order))

        for name in self.order:
            failure = self._check_dependencies(name)
            if failure:
                self._block(name, failure)
                continue

            logger.info("Starting service: %s", name)
            try:
                started = self.managers[name].start()
            except OSError as e:
                self._block(name, f"failed to start: {e}")
                continue
            if started:
                self.trackers[name].reset()
            else:
                self.skipped.add(name)

        if monitor:
            self.health_monitor.start()

        if self.blocked:
            raise DependencyFailedError(self.blocked)

    def _check_dependencies(self, name: str) -> Optional[str]:
        """
        Waits for every dependency of ``name`` to meet its condition.

        :return: The reason the service must not start, or None.
        """
        for dep in self.config.services[name].depends_on:
            if dep.service not in self.config.services:
                continue  # optional edge to an undeclared service
            if dep.service in self.blocked:
                failure = f"dependency {dep.service} was not started"
            else:
                failure = self._wait_for_condition(dep)
            if failure and not dep.required:
                logger.warning("Starting %s anyway, optional %s", name, failure)
                continue
            if failure:
                return failure
        return None

    def _wait_for_condition(self, dep: ServiceDependency) -> Optional[str]:
        if dep.condition == DependencyCondition.HEALTHY:
            status = self._wait_for_healthy(dep.service)
            if status != HealthStatus.HEALTHY:
                return f"dependency {dep.service} is {status.value}"
        elif dep.condition == DependencyCondition.COMPLETED_SUCCESSFULLY:
            exit_code = self._wait_for_completion(dep.service)
            if exit_code != 0:
                return f"dependency {dep.service} did not complete successfully (exit code {exit_code})"
        else:
            manager = self.managers[dep.service]
            if not manager.started and dep.service not in self.skipped:
                return f"dependency {dep.service} was not started"
        return None

    def _wait_for_healthy(self, name: str) -> HealthStatus:
        """
        Waits for a service to settle according to its health check definition.
        A service that already reported healthy once is not probed again.

        :param name: The name of the service to wait for.
        """
        manager = self.managers[name]
        tracker = self.trackers[name]
        hc = manager.service_def.health_check
        if hc is None or hc.disabled:
            logger.warning("Service %s has no health check; treating it as unhealthy", name)
            return HealthStatus.UNHEALTHY
        if tracker.ever_healthy:
            return HealthStatus.HEALTHY

        logger.info("Waiting for %s to become healthy...", name)
        runner = HealthCheckRunner(hc, env=manager.environment(), cwd=manager.probe_cwd())
        is_running = manager.runner.is_running if manager.started else None
        status = wait_until_settled(
            runner, tracker, is_running=is_running, timeout=self.health_timeout, sleep=self.sleep
        )
        if status == HealthStatus.HEALTHY:
            logger.info("Service %s is healthy.", name)
        else:
            logger.error("Service %s is %s: %s", name, status.value, tracker.health.last_output)
        return status

    def _wait_for_completion(self, name: str) -> Optional[int]:
        manager = self.managers[name]
        if not manager.started:
            return 0 if name in self.skipped else None
        logger.info("Waiting for %s to complete...", name)
        return manager.runner.wait(timeout=self.completion_timeout)

    def _block(self, name: str, reason: str):
        logger.error("Not starting %s: %s", name, reason)
        self.blocked[name] = reason

    def down(self):
        """
        Stops all services in reverse dependency order.
        """
        self.health_monitor.stop()
        for name in reversed(self.order):
            if self.managers[name].started:
                logger.info("Stopping service: %s", name)
                self.managers[name].stop()

    def ps(self) -> Dict[str, str]:
        """
        Returns the status of all services.

        :return: Service names and their statuses.
        """
        status = {}
        for name in self.order:
            if name in self.blocked:
                status[name] = BLOCKED
            elif name in self.skipped:
                status[name] = SKIPPED
            elif not self.managers[name].started:
                status[name] = PENDING
            else:
                status[name] = self.managers[name].status()
        return status

    def health(self) -> Dict[str, HealthStatus]:
        """Current health status of every service."""
        return {name: self.trackers[name].status for name in self.order}

    def _handle_service_failure(self, name: str):
        """
        Callback handled when a service failure is detected by the health monitor.

        :param name: The name of the failed service.
        """
        dependents = self.resolver.dependents(self.config, name)
        if dependents:
            logger.error("Service %s failed; dependents affected: %s", name, ", ".join(dependents))
        else:
            logger.error("Service %s failed", name)

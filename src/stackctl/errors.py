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
Error classes for stackctl.

Library code raises these; the CLI turns them into messages and exit codes.
"""
from typing import Dict, List, Optional


class StackctlError(Exception):
    """Base exception for stackctl."""
    pass


class ConfigurationError(StackctlError):
    """Invalid or missing runtime configuration."""
    pass


class ManifestError(StackctlError):
    """The compose manifest cannot be parsed or is inconsistent."""
    pass


class InterpolationError(ManifestError):
    """A required variable (``${VAR:?message}``) is unset, or a reference is malformed."""

    def __init__(self, variable: str, message: str = ""):
        self.variable = variable
        super().__init__(message or f"Required variable {variable} is not set")


class CircularDependencyError(ManifestError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class UnknownDependencyError(ManifestError):
    """A service depends on a service that is not declared."""

    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(
            f"Service {service} depends on undefined service {dependency}"
        )


class DependencyFailedError(StackctlError):
    """
    One or more services were held back because a dependency never met its
    required condition.

    ``blocked`` maps each held-back service to the reason it was not started.
    """

    def __init__(self, blocked: Dict[str, str]):
        self.blocked = dict(blocked)
        details = "; ".join(f"{name}: {reason}" for name, reason in blocked.items())
        super().__init__(f"Services not started: {details}")


class StartupStepError(StackctlError):
    """A startup sequencer step failed; the sequence was aborted."""

    def __init__(self, step: str, exit_code: int = 1, cause: Optional[BaseException] = None):
        self.step = step
        self.exit_code = exit_code if exit_code else 1
        self.cause = cause
        reason = f": {cause}" if cause else ""
        super().__init__(f"Startup step '{step}' failed (exit code {self.exit_code}){reason}")

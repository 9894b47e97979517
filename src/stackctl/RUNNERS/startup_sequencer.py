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
Boot-time preparation of the application container.

Runs four steps in order and stops at the first failure:

1. register the database host alias in the hosts table,
2. activate the enabled or disabled debug extension fragment,
3. create the public storage link as the unprivileged application user,
4. replace the current process with the supervisor.
"""
import logging
import os
import pwd
import shutil
import socket
import subprocess
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import ConfigurationError, StartupStepError
from ..MODELS.startup_config import DEBUG_FLAG_VALUES, StartupConfig
from ..UTILS.hosts_file import register_host, resolve_address
from .entrypoint_executor import EntrypointExecutor

logger = logging.getLogger(__name__)


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


class StartupSequencer:
    """
    Prepares a freshly started application container, then hands off to
    the supervisor. Steps are strictly sequential; there is no recovery.
    """

    def __init__(
        self,
        config: StartupConfig,
        environ: Optional[Dict[str, str]] = None,
        resolver: Callable[[str], str] = socket.gethostbyname,
        executor: Optional[EntrypointExecutor] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        """
        :param config: Startup configuration.
        :param environ: Environment passed to the supervisor; defaults to ours.
        :param resolver: Name resolver for the host registration step.
        :param executor: Performs the final exec.
        :param run: Runs the link command when one is configured.
        """
        self.config = config
        self.environ = dict(os.environ) if environ is None else dict(environ)
        self.resolver = resolver
        self.executor = executor or EntrypointExecutor()
        self.run_command = run

    def steps(self) -> List[Tuple[str, Callable[[], None]]]:
        return [
            ("register-host", self.register_host),
            ("toggle-debug", self.toggle_debug),
            ("link-storage", self.link_storage),
            ("handoff", self.handoff),
        ]

    def run(self) -> None:
        """
        Runs every step in order. Returns only if the exec was replaced
        (in tests); in a container the handoff never comes back.

        :raises StartupStepError: On the first failing step.
        """
        steps = self.steps()
        for index, (name, step) in enumerate(steps, start=1):
            logger.info("Step %d/%d: %s", index, len(steps), name)
            try:
                step()
            except subprocess.CalledProcessError as e:
                raise StartupStepError(name, e.returncode, e) from e
            except (OSError, ValueError, KeyError, ConfigurationError) as e:
                raise StartupStepError(name, 1, e) from e

    def register_host(self) -> None:
        """
        Maps the configured host name to the address of the host alias.
        """
        address = resolve_address(self.config.host_alias, self.resolver)
        if register_host(self.config.hosts_file, address, self.config.host_name):
            logger.info("Registered %s -> %s in %s", self.config.host_name, address, self.config.hosts_file)
        else:
            logger.info("%s already maps to %s", self.config.host_name, address)

    def toggle_debug(self) -> None:
        """
        Copies the enabled fragment if the flag is exactly ``true``,
        the disabled one otherwise.
        """
        flag = self.config.debug_flag
        if self.config.debug_enabled:
            source = self.config.debug_on_fragment
        else:
            source = self.config.debug_off_fragment
            if flag not in DEBUG_FLAG_VALUES:
                logger.warning("XDEBUG_ENABLED=%r is not 'true'; debugging stays disabled", flag)

        shutil.copyfile(source, self.config.debug_target)
        logger.info("Debug extension %s", "enabled" if self.config.debug_enabled else "disabled")

    def link_storage(self) -> None:
        """
        Creates the public storage link as the application user. Running it
        again leaves an existing link untouched.
        """
        root = self.config.project_root
        if not root:
            raise ConfigurationError("PROJECT_ROOT is not set")

        if self.config.link_command:
            self._run_link_command(root)
            return

        source = os.path.join(root, self.config.link_source)
        link = os.path.join(root, self.config.link_path)
        if os.path.lexists(link):
            logger.info("The [%s] link already exists.", link)
            return

        os.makedirs(os.path.dirname(link), exist_ok=True)
        os.symlink(source, link)
        if _is_root():
            user = pwd.getpwnam(self.config.link_user)
            os.lchown(link, user.pw_uid, user.pw_gid)
        logger.info("The [%s] link has been connected to [%s].", link, source)

    def _run_link_command(self, root: str) -> None:
        command = [arg.replace("{project_root}", root) for arg in self.config.link_command]
        user = self.config.link_user if _is_root() else None
        if user is None:
            logger.debug("Not running as root; link command runs as the current user")
        self.run_command(command, check=True, user=user, cwd=root, env=self.environ)

    def handoff(self) -> None:
        """
        Replaces this process with the supervisor.
        """
        self.executor.handoff(self.config.supervisor_command, env=self.environ)

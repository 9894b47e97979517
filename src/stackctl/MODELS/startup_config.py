"""
Configuration of the application container's startup sequence.
"""
import shlex
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ValidationError, model_validator

from ..errors import ConfigurationError

DEBUG_FLAG_VALUES = ("true", "false", "")

# field name -> environment variable
ENVIRONMENT_KEYS: Dict[str, str] = {
    "debug_flag": "XDEBUG_ENABLED",
    "project_root": "PROJECT_ROOT",
    "host_alias": "STACKCTL_HOST_ALIAS",
    "host_name": "STACKCTL_HOST_NAME",
    "hosts_file": "STACKCTL_HOSTS_FILE",
    "debug_on_fragment": "STACKCTL_DEBUG_ON_FRAGMENT",
    "debug_off_fragment": "STACKCTL_DEBUG_OFF_FRAGMENT",
    "debug_target": "STACKCTL_DEBUG_TARGET",
    "strict_debug_flag": "STACKCTL_STRICT_DEBUG_FLAG",
    "link_user": "STACKCTL_LINK_USER",
    "link_source": "STACKCTL_LINK_SOURCE",
    "link_path": "STACKCTL_LINK_PATH",
    "link_command": "STACKCTL_LINK_COMMAND",
    "supervisor_command": "STACKCTL_SUPERVISOR_COMMAND",
}

_COMMAND_FIELDS = ("link_command", "supervisor_command")


class StartupConfig(BaseModel):
    """
    Everything the startup sequencer needs, read from the container environment.

    ``link_source`` and ``link_path`` are relative to ``project_root`` unless
    absolute. When ``link_command`` is set it replaces the built-in symlink
    step; ``{project_root}`` in its arguments is substituted.
    """
    host_alias: str = "host.docker.internal"
    host_name: str = "pgsql"
    hosts_file: str = "/etc/hosts"

    debug_flag: str = ""
    debug_on_fragment: str = "/home/xdebug/xdebug-on.ini"
    debug_off_fragment: str = "/home/xdebug/xdebug-off.ini"
    debug_target: str = "/usr/local/etc/php/conf.d/xdebug.ini"
    strict_debug_flag: bool = False

    project_root: Optional[str] = None
    link_user: str = "www-data"
    link_source: str = "storage/app/public"
    link_path: str = "public/storage"
    link_command: List[str] = []

    supervisor_command: List[str] = [
        "supervisord", "-c", "/etc/supervisor/supervisord.conf", "-n",
    ]

    @model_validator(mode="after")
    def _check_debug_flag(self):
        if self.strict_debug_flag and self.debug_flag not in DEBUG_FLAG_VALUES:
            raise ValueError(
                f"XDEBUG_ENABLED must be 'true', 'false' or empty, got {self.debug_flag!r}"
            )
        if not self.supervisor_command:
            raise ValueError("supervisor command must not be empty")
        return self

    @property
    def debug_enabled(self) -> bool:
        # Exact match only: "TRUE", "1" and typos select the disabled fragment.
        return self.debug_flag == "true"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str]) -> "StartupConfig":
        """
        Builds the configuration from environment variables.

        Unset and empty ``STACKCTL_*`` variables keep their defaults.

        :raises ConfigurationError: If a value fails validation.
        """
        values = {}
        for field, key in ENVIRONMENT_KEYS.items():
            raw = environ.get(key)
            if raw is None:
                continue
            if field == "debug_flag":
                values[field] = raw
            elif not raw:
                continue
            elif field in _COMMAND_FIELDS:
                values[field] = shlex.split(raw)
            else:
                values[field] = raw
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

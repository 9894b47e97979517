"""
Managers for handling environment variables and .env file resolution.
"""
import logging
import os
from typing import Dict, Optional

from ..MODELS.service_definition import ServiceDefinition
from ..PARSERS.env_parser import EnvParser

logger = logging.getLogger(__name__)


class EnvironmentManager:
    """
    Manages the merging and resolution of environment variables from multiple sources.
    """
    def __init__(self, base_dir: str = ".", base_env: Optional[Dict[str, str]] = None):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        :param base_env: Starting environment; defaults to the current process environment.
        """
        self.base_dir = base_dir
        self.base_env = dict(os.environ) if base_env is None else dict(base_env)

    def get_merged_environment(self, service_def: ServiceDefinition) -> Dict[str, str]:
        """
        Merges the base environment, the service's env files and its explicit
        bindings, in increasing precedence. Bindings are interpolated against
        everything merged before them.

        :param service_def: The service; its env files are relative to ``base_dir``.
        :return: The merged environment.
        """
        merged_env = dict(self.base_env)

        # Later files override earlier ones
        for env_file in service_def.environment_files:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                merged_env.update(EnvParser.parse(file_path))
            else:
                logger.warning("Environment file %s not found, skipping", file_path)

        merged_env.update(service_def.resolve_environment(dict(merged_env)))

        return merged_env

"""
Managers for handling environment variables and .env file resolution.
"""
import os
from typing import Dict, Optional
from ..MODELS.service_definition import ServiceDefinition
from ..PARSERS.env_parser import EnvParser


class EnvironmentManager:
    """
    Builds the process environment of a service from the host environment,
    its env files, its declared variables and service discovery entries.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir

    def get_merged_environment(self,
                               service: ServiceDefinition,
                               extra_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Later sources win: host environment, env files in order, discovery
        entries, then the service's own ``environment``.

        :param service: The service to build the environment for.
        :param extra_env: Additional variables such as service discovery.
        :return: A dictionary containing the merged environment variables.
        """
        merged_env = os.environ.copy()

        for env_file in service.environment_files:
            file_path = os.path.join(self.base_dir, env_file)
            if os.path.exists(file_path):
                merged_env.update(EnvParser.parse(file_path))

        if extra_env:
            merged_env.update(extra_env)

        merged_env.update(service.environment)
        return merged_env

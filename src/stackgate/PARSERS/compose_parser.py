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
Parsers for compose YAML manifests.
"""
import logging
import os
import shlex
from typing import Dict, Any, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import DefinitionError
from ..MODELS.orchestration_config import (
    DEFAULT_NETWORK,
    NetworkDefinition,
    OrchestrationConfig,
    VolumeDefinition,
)
from ..MODELS.service_definition import (
    DependencyCondition,
    DependencyEdge,
    HealthCheck,
    PortBinding,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
    VolumeMount,
)
from ..UTILS.durations import parse_duration
from ..UTILS.string_interpolation import EnvironmentInterpolator
from .env_parser import EnvParser
from .stack_validator import StackValidator

logger = logging.getLogger(__name__)

_DEPLOY_CONDITIONS = {
    "none": RestartPolicyCondition.NONE,
    "on-failure": RestartPolicyCondition.ON_FAILURE,
}


def merge_manifests(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merges an override manifest over a base one. Mappings merge key by key,
    any other value (a command, a list of ports) replaces the base value. An
    empty value never erases a base entry.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_manifests(current, value)
        elif value is None and key in merged:
            continue
        else:
            merged[key] = value
    return merged


class ComposeParser:
    """
    Parser for compose manifests. Interpolates variables, builds the models
    and validates the result before anything is started.
    """
    def __init__(self,
                 context: Optional[Dict[str, str]] = None,
                 env_files: Optional[List[str]] = None):
        """
        Initializes the parser with an environment context for interpolation.

        :param context: Variables for interpolation. Defaults to the process
            environment laid over ``env_files``.
        :param env_files: .env files read before the process environment.
        """
        if context is None:
            context = {}
            for env_file in env_files or []:
                context.update(EnvParser.parse(env_file))
            context.update(os.environ)
        self.context = context
        self.validator = StackValidator()

    def parse(self, compose_path: str, validate: bool = True) -> OrchestrationConfig:
        """
        Parses a compose file from a path.

        :param compose_path: Path to the compose file.
        :param validate: Run definition-time validation on the result.
        :return: Parsed configuration.
        """
        return self.parse_files([compose_path], validate=validate)

    def parse_files(self, compose_paths: List[str], validate: bool = True) -> OrchestrationConfig:
        """
        Parses several compose files as one manifest. Each file is merged over
        the ones before it, see ``merge_manifests``.

        :param compose_paths: Base manifest first, then its overrides.
        :param validate: Run definition-time validation on the result.
        :return: Parsed configuration.
        """
        data: Dict[str, Any] = {}
        for path in compose_paths:
            with open(path, 'r') as f:
                data = merge_manifests(data, self._load_yaml(f.read()))
        return self._build(data, validate)

    def parse_from_string(self, content: str, validate: bool = True) -> OrchestrationConfig:
        """
        Parses a compose manifest from a string.

        :param content: YAML content of the compose file.
        :param validate: Run definition-time validation on the result.
        :return: Parsed configuration.
        :raises MissingVariableError: If required variables are not set.
        :raises DefinitionError: If the manifest is malformed or invalid.
        """
        return self._build(self._load_yaml(content), validate)

    def _load_yaml(self, content: str) -> Dict[str, Any]:
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DefinitionError([f"Invalid YAML: {e}"])
        if not data:
            return {}
        if not isinstance(data, dict):
            raise DefinitionError(["Top level of the manifest must be a mapping"])
        return data

    def _build(self, data: Dict[str, Any], validate: bool) -> OrchestrationConfig:
        # Interpolate values after loading so comments are never expanded
        interpolator = EnvironmentInterpolator(self.context)
        data = interpolator.substitute_tree(data)
        interpolator.raise_for_missing()

        problems: List[str] = []
        services = {}
        for name, spec in (data.get('services') or {}).items():
            if not isinstance(spec, dict):
                problems.append(f"services.{name}: must be a mapping")
                continue
            try:
                services[name] = self._parse_service(name, spec)
            except (ValueError, TypeError, KeyError) as e:
                problems.extend(self._describe(f"services.{name}", e))

        networks = {}
        for name, spec in (data.get('networks') or {}).items():
            spec = spec or {}
            networks[name] = NetworkDefinition(
                name=name,
                driver=spec.get('driver', 'bridge'),
                external=bool(spec.get('external', False)),
            )
        if DEFAULT_NETWORK not in networks and any(
                DEFAULT_NETWORK in svc.networks for svc in services.values()):
            networks[DEFAULT_NETWORK] = NetworkDefinition(name=DEFAULT_NETWORK)

        volumes = {}
        for name, spec in (data.get('volumes') or {}).items():
            spec = spec or {}
            volumes[name] = VolumeDefinition(
                name=name,
                driver=spec.get('driver', 'local'),
                external=bool(spec.get('external', False)),
            )

        if problems:
            raise DefinitionError(problems)

        config = OrchestrationConfig(
            name=data.get('name'),
            services=services,
            networks=networks,
            volumes=volumes,
        )
        if validate:
            self.validator.validate(config)
        logger.debug("Parsed %d services", len(services))
        return config

    def _parse_service(self, name: str, spec: Dict[str, Any]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :return: A ServiceDefinition instance.
        """
        return ServiceDefinition(
            name=name,
            image_name=spec.get('image', ''),
            cmd=self._to_command(spec.get('command')),
            entrypoint=self._to_command(spec.get('entrypoint')),
            working_dir=spec.get('working_dir'),
            environment=self._parse_environment(spec.get('environment')),
            environment_files=self._parse_env_files(spec.get('env_file')),
            ports=[self._parse_port(p) for p in spec.get('ports') or []],
            networks=self._parse_networks(spec.get('networks')),
            volumes=[self._parse_volume(v) for v in spec.get('volumes') or []],
            restart_policy=self._parse_restart_policy(spec),
            health_check=self._parse_health_check(spec.get('healthcheck')),
            depends_on=self._parse_depends_on(spec.get('depends_on')),
        )

    def _parse_restart_policy(self, spec: Dict[str, Any]) -> RestartPolicy:
        """
        Reads ``deploy.restart_policy`` or, failing that, the ``restart`` short form.
        """
        deploy_policy = (spec.get('deploy') or {}).get('restart_policy')
        if deploy_policy is not None:
            condition = deploy_policy.get('condition', 'on-failure')
            if condition not in _DEPLOY_CONDITIONS:
                raise ValueError(f"restart_policy.condition {condition!r} is not supported "
                                 f"(use one of: {', '.join(_DEPLOY_CONDITIONS)})")
            kwargs: Dict[str, Any] = {'condition': _DEPLOY_CONDITIONS[condition]}
            if deploy_policy.get('max_attempts') is not None:
                kwargs['max_attempts'] = int(deploy_policy['max_attempts'])
            if deploy_policy.get('delay') is not None:
                kwargs['delay'] = parse_duration(deploy_policy['delay'])
            return RestartPolicy(**kwargs)

        restart = str(spec.get('restart', 'no'))
        if restart == 'no':
            return RestartPolicy(condition=RestartPolicyCondition.NONE)
        if restart == 'on-failure':
            return RestartPolicy(condition=RestartPolicyCondition.ON_FAILURE)
        if restart.startswith('on-failure:'):
            return RestartPolicy(condition=RestartPolicyCondition.ON_FAILURE,
                                 max_attempts=int(restart.split(':', 1)[1]))
        raise ValueError(f"restart {restart!r} is not supported (use 'no' or 'on-failure[:N]')")

    def _parse_health_check(self, hc: Optional[Dict[str, Any]]) -> Optional[HealthCheck]:
        if not hc or hc.get('disable'):
            return None
        test = hc.get('test')
        if test is None:
            raise ValueError("healthcheck.test is required")
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        else:
            test = [str(part) for part in test]

        kwargs: Dict[str, Any] = {'test': test}
        for key in ('interval', 'timeout', 'start_period'):
            if hc.get(key) is not None:
                kwargs[key] = parse_duration(hc[key])
        if hc.get('retries') is not None:
            kwargs['retries'] = int(hc['retries'])
        try:
            return HealthCheck(**kwargs)
        except ValidationError as e:
            raise ValueError("healthcheck " + "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
            ))

    def _parse_depends_on(self, depends_on: Any) -> List[DependencyEdge]:
        if not depends_on:
            return []
        if isinstance(depends_on, list):
            return [DependencyEdge(target=str(target)) for target in depends_on]

        edges = []
        for target, options in depends_on.items():
            condition = (options or {}).get('condition', DependencyCondition.STARTED.value)
            try:
                edges.append(DependencyEdge(target=target, condition=DependencyCondition(condition)))
            except ValueError:
                raise ValueError(f"depends_on.{target}.condition {condition!r} is not supported "
                                 f"(use service_started or service_healthy)")
        return edges

    def _parse_port(self, port: Any) -> PortBinding:
        if isinstance(port, dict):
            return PortBinding(
                container_port=int(port['target']),
                host_port=int(port['published']) if port.get('published') else None,
                host_ip=port.get('host_ip', '0.0.0.0'),
                protocol=port.get('protocol', 'tcp'),
            )

        text, _, protocol = str(port).partition('/')
        if '-' in text:
            raise ValueError(f"port ranges are not supported: {port!r}")
        parts = text.split(':')
        if len(parts) == 1:
            return PortBinding(container_port=int(parts[0]), protocol=protocol or 'tcp')
        if len(parts) == 2:
            host, container = parts
            host_ip = '0.0.0.0'
        elif len(parts) == 3:
            host_ip, host, container = parts
        else:
            raise ValueError(f"invalid port mapping: {port!r}")
        return PortBinding(
            container_port=int(container),
            host_port=int(host) if host else None,
            host_ip=host_ip or '0.0.0.0',
            protocol=protocol or 'tcp',
        )

    def _parse_volume(self, volume: Any) -> VolumeMount:
        if isinstance(volume, dict):
            return VolumeMount(
                source=volume['source'],
                target=volume['target'],
                read_only=bool(volume.get('read_only', False)),
            )
        parts = str(volume).split(':')
        if len(parts) == 2:
            return VolumeMount(source=parts[0], target=parts[1])
        if len(parts) == 3:
            return VolumeMount(source=parts[0], target=parts[1], read_only=(parts[2] == 'ro'))
        raise ValueError(f"invalid volume mount {volume!r} (expected source:target[:mode])")

    def _parse_environment(self, env_spec: Any) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        if isinstance(env_spec, list):
            for entry in env_spec:
                if '=' in entry:
                    k, v = entry.split('=', 1)
                    environment[k] = v
                elif entry in self.context:
                    environment[entry] = self.context[entry]
        elif isinstance(env_spec, dict):
            for k, v in env_spec.items():
                if v is None:
                    if k in self.context:
                        environment[k] = self.context[k]
                elif isinstance(v, bool):
                    environment[k] = 'true' if v else 'false'
                else:
                    environment[k] = str(v)
        return environment

    def _parse_env_files(self, env_file: Any) -> List[str]:
        if env_file is None:
            return []
        if isinstance(env_file, (str, dict)):
            env_file = [env_file]
        return [e['path'] if isinstance(e, dict) else str(e) for e in env_file]

    def _parse_networks(self, networks: Any) -> List[str]:
        if not networks:
            return [DEFAULT_NETWORK]
        if isinstance(networks, dict):
            return list(networks.keys())
        return [str(n) for n in networks]

    def _to_command(self, val: Any) -> List[str]:
        """
        Helper to turn a command value into an argument list.

        :param val: A string (split like a shell would) or a list.
        :return: A list of strings.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]

    @staticmethod
    def _describe(prefix: str, error: Exception) -> List[str]:
        if isinstance(error, ValidationError):
            return [
                f"{prefix}.{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                if err['loc'] else f"{prefix}: {err['msg']}"
                for err in error.errors()
            ]
        if isinstance(error, KeyError):
            return [f"{prefix}: missing key {error}"]
        return [f"{prefix}: {error}"]

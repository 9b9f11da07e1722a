"""
Network management for a stack: one isolated network namespace per project,
service membership, published port allocation and service discovery.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from ..errors import PortConflictError
from ..MODELS.orchestration_config import NetworkDefinition
from ..MODELS.service_definition import ServiceDefinition
from ..UTILS.port_finder import get_free_port, is_port_free

logger = logging.getLogger(__name__)


@dataclass
class Network:
    """A created network and the services attached to it."""

    name: str
    scoped_name: str
    driver: str = "bridge"
    members: Set[str] = field(default_factory=set)


class NetworkManager:
    """
    Manages the networks of one project. Network names are scoped by project
    so two deployments of the same manifest never share a network.
    """
    def __init__(self, project: str = "stackgate", check_ports: bool = True):
        """
        :param project: Project name used to scope network names.
        :param check_ports: Verify published host ports are free before use.
        """
        self.project = project
        self.check_ports = check_ports
        self._lock = threading.Lock()
        self.networks: Dict[str, Network] = {}
        self.service_ports: Dict[str, Dict[int, Tuple[str, int]]] = {}  # service -> {container: (ip, host)}

    def create_network(self, definition: NetworkDefinition) -> Network:
        """Creates the project-scoped network. Idempotent."""
        with self._lock:
            if definition.name not in self.networks:
                scoped = definition.name if definition.external else f"{self.project}_{definition.name}"
                self.networks[definition.name] = Network(
                    name=definition.name, scoped_name=scoped, driver=definition.driver
                )
                logger.info("Created network %s (driver %s)", scoped, definition.driver)
            return self.networks[definition.name]

    def connect(self, service: ServiceDefinition) -> None:
        with self._lock:
            for name in service.networks:
                self.networks[name].members.add(service.name)

    def disconnect(self, service_name: str) -> None:
        with self._lock:
            for network in self.networks.values():
                network.members.discard(service_name)

    def remove_network(self, name: str) -> bool:
        """
        Removes a network that no longer has members.

        :raises RuntimeError: If services are still attached.
        """
        with self._lock:
            network = self.networks.get(name)
            if network is None:
                return False
            if network.members:
                raise RuntimeError(
                    f"Network {network.scoped_name} still has members: {', '.join(sorted(network.members))}"
                )
            del self.networks[name]
        logger.info("Removed network %s", network.scoped_name)
        return True

    def remove_all(self) -> None:
        for name in list(self.networks):
            self.remove_network(name)

    def allocate_ports(self, service_def: ServiceDefinition) -> Dict[int, Tuple[str, int]]:
        """
        Allocates host ports for a service based on its definition.

        :param service_def: The service definition.
        :return: Mapping from container port to the bound (host ip, host port).
        :raises PortConflictError: If a requested host port is already taken.
        """
        mappings = {}
        for binding in service_def.ports:
            if binding.host_port is None:
                allocated_port = get_free_port(binding.host_ip if binding.host_ip != "0.0.0.0" else "127.0.0.1")
            elif not self.check_ports or is_port_free(binding.host_port, binding.host_ip):
                allocated_port = binding.host_port
            else:
                raise PortConflictError(
                    f"Port {binding.host_ip}:{binding.host_port} is already in use, "
                    f"cannot start service {service_def.name}"
                )
            mappings[binding.container_port] = (binding.host_ip, allocated_port)

        self.service_ports[service_def.name] = mappings
        return mappings

    def get_service_discovery_env(self, all_services: List[str]) -> Dict[str, str]:
        """
        Generates environment variables for service discovery.
        Example: DB_HOST=127.0.0.1, DB_PORT=5432
        """
        env = {}
        for name in all_services:
            prefix = name.upper().replace('-', '_')
            env[f"{prefix}_HOST"] = "127.0.0.1"
            ports = self.service_ports.get(name)
            if ports:
                first = next(iter(ports.values()))
                env[f"{prefix}_PORT"] = str(first[1])
        return env

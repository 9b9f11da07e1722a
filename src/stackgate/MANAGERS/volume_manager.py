"""
Volume management for a stack: named volumes that outlive services, mounted
into each service's root directory and detached again when it stops.
"""
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from ..MODELS.service_definition import ServiceDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamedVolume:
    name: str
    path: str


class VolumeManager:
    """
    Owns the project's named volumes and tracks which services have them mounted.

    A volume is created on first reference, stays on disk across restarts and
    teardowns, and is only deleted by ``remove_volume``.
    """
    def __init__(self, base_dir: str = ".", project: str = "stackgate"):
        """
        Initializes the volume manager.

        :param base_dir: Directory that relative bind mounts and state live under.
        :param project: Project name; volumes of different projects never collide.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.project = project
        self.state_root = os.path.join(self.base_dir, ".stackgate", project)
        self.volumes_root = os.path.join(self.state_root, "volumes")
        self.rootfs_root = os.path.join(self.state_root, "rootfs")
        os.makedirs(self.volumes_root, exist_ok=True)
        self._lock = threading.Lock()
        self._users: Dict[str, Set[str]] = {}

    def create_volume(self, name: str) -> NamedVolume:
        """Creates the volume directory if needed. Idempotent."""
        path = os.path.join(self.volumes_root, name)
        if not os.path.isdir(path):
            os.makedirs(path, exist_ok=True)
            logger.info("Created volume %s_%s", self.project, name)
        return NamedVolume(name=name, path=path)

    def get_volume(self, name: str) -> Optional[NamedVolume]:
        path = os.path.join(self.volumes_root, name)
        if os.path.isdir(path):
            return NamedVolume(name=name, path=path)
        return None

    def service_root(self, service_name: str) -> str:
        return os.path.join(self.rootfs_root, service_name)

    def attach(self, service: ServiceDefinition) -> None:
        """
        Mounts every volume of ``service`` into its root directory.
        Named volumes are created on first reference.
        """
        root = self.service_root(service.name)
        os.makedirs(root, exist_ok=True)
        for mount in service.volumes:
            if mount.is_named:
                source_path = self.create_volume(mount.source).path
                with self._lock:
                    self._users.setdefault(mount.source, set()).add(service.name)
            else:
                source_path = self.resolve_source(mount.source)
                os.makedirs(source_path, exist_ok=True)
            self._link(source_path, self.resolve_target(mount.target, service.name))

    def detach(self, service_name: str) -> List[str]:
        """
        Drops ``service_name`` as a user of its volumes.

        :return: Named volumes that no longer have any user.
        """
        released = []
        with self._lock:
            for volume, users in self._users.items():
                if service_name in users:
                    users.discard(service_name)
                    if not users:
                        released.append(volume)
        for volume in released:
            logger.debug("Volume %s released", volume)
        return released

    def users(self, name: str) -> Set[str]:
        with self._lock:
            return set(self._users.get(name, set()))

    def in_use(self, name: str) -> bool:
        return bool(self.users(name))

    def remove_volume(self, name: str, force: bool = False) -> bool:
        """
        Deletes a volume and its data.

        :param force: Remove even if services still have it mounted.
        :return: True if something was removed.
        :raises RuntimeError: If the volume is in use and ``force`` is not set.
        """
        if self.in_use(name) and not force:
            raise RuntimeError(f"Volume {name} is in use by {', '.join(sorted(self.users(name)))}")
        volume = self.get_volume(name)
        if volume is None:
            return False
        shutil.rmtree(volume.path)
        with self._lock:
            self._users.pop(name, None)
        logger.info("Removed volume %s_%s", self.project, name)
        return True

    def remove_rootfs(self) -> None:
        """Removes the per-service mount directories (never the volume data)."""
        if os.path.isdir(self.rootfs_root):
            shutil.rmtree(self.rootfs_root)

    def resolve_source(self, source: str) -> str:
        """
        Resolves the source path of a volume.

        :param source: The source path or volume name.
        :return: The absolute path to the source.
        """
        source = os.path.expanduser(source)
        if not os.path.isabs(source) and not source.startswith('.') and '/' not in source:
            return os.path.join(self.volumes_root, source)
        return os.path.abspath(os.path.join(self.base_dir, source))

    def resolve_target(self, target: str, service_name: str) -> str:
        """
        Resolves a path inside a service to a path under its root directory.

        :param target: The path inside the service.
        :param service_name: The service the path belongs to.
        :return: The absolute path to the target.
        """
        root = self.service_root(service_name)
        resolved = os.path.abspath(os.path.join(root, target.lstrip('/\\')))
        if os.path.commonpath([root, resolved]) != root:
            raise ValueError(f"Mount target {target} escapes the service root")
        return resolved

    def _link(self, source_path: str, target_path: str) -> None:
        target_parent = os.path.dirname(target_path)
        if target_parent:
            os.makedirs(target_parent, exist_ok=True)

        if os.path.islink(target_path):
            if os.path.realpath(target_path) == os.path.realpath(source_path):
                return
            os.unlink(target_path)
        elif os.path.isdir(target_path):
            shutil.rmtree(target_path)
        elif os.path.exists(target_path):
            os.remove(target_path)

        try:
            os.symlink(source_path, target_path, target_is_directory=os.path.isdir(source_path))
            logger.debug("Mapped volume: %s -> %s", source_path, target_path)
        except (OSError, NotImplementedError) as e:
            logger.warning("Could not mount %s at %s: %s", source_path, target_path, e)

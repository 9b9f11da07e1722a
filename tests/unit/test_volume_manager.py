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
Unit tests for the volume manager.
"""
import os

import pytest

from stackgate.MANAGERS.volume_manager import VolumeManager
from stackgate.MODELS.service_definition import ServiceDefinition, VolumeMount


def _service(name, *mounts):
    return ServiceDefinition(
        name=name,
        volumes=[VolumeMount(source=s, target=t) for s, t in mounts],
    )


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_init(self, tmp_path):
        """Test initialization."""
        vm = VolumeManager(base_dir=str(tmp_path), project="shop")
        assert os.path.exists(vm.volumes_root)
        assert vm.state_root == os.path.join(str(tmp_path), ".stackgate", "shop")

    def test_create_volume_idempotent(self, tmp_path):
        """Test that creating the same volume twice returns the existing volume."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vol1 = vm.create_volume("test-vol")
        with open(os.path.join(vol1.path, "data.txt"), "w") as f:
            f.write("kept")
        vol2 = vm.create_volume("test-vol")
        assert vol1.path == vol2.path
        assert os.path.exists(os.path.join(vol2.path, "data.txt"))

    def test_projects_do_not_share_volumes(self, tmp_path):
        """Test that two projects get separate volume directories."""
        a = VolumeManager(base_dir=str(tmp_path), project="acme").create_volume("sites")
        b = VolumeManager(base_dir=str(tmp_path), project="globex").create_volume("sites")
        assert a.path != b.path

    def test_attach_links_named_volume(self, tmp_path):
        """Test that attach mounts a named volume into the service root."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.attach(_service("backend", ("sites", "/home/frappe/sites")))

        target = vm.resolve_target("/home/frappe/sites", "backend")
        assert os.path.islink(target)
        assert os.path.realpath(target) == os.path.realpath(vm.get_volume("sites").path)
        assert vm.users("sites") == {"backend"}

    def test_attach_bind_mount(self, tmp_path):
        """Test that a relative path is resolved against the base directory."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.attach(_service("web", ("./static", "/srv/static")))
        assert os.path.isdir(tmp_path / "static")
        assert vm.users("static") == set()

    def test_shared_volume_tracks_every_user(self, tmp_path):
        """Test that a volume stays in use until its last user detaches."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.attach(_service("backend", ("sites", "/sites")))
        vm.attach(_service("worker", ("sites", "/sites"), ("logs", "/logs")))

        assert vm.detach("backend") == []
        assert vm.in_use("sites")
        assert sorted(vm.detach("worker")) == ["logs", "sites"]
        assert not vm.in_use("sites")

    def test_remove_volume_in_use(self, tmp_path):
        """Test that a mounted volume cannot be removed without force."""
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.attach(_service("backend", ("sites", "/sites")))
        with pytest.raises(RuntimeError):
            vm.remove_volume("sites")
        assert vm.remove_volume("sites", force=True)
        assert vm.get_volume("sites") is None

    def test_remove_missing_volume(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.remove_volume("nothing") is False

    def test_remove_rootfs_keeps_data(self, tmp_path):
        vm = VolumeManager(base_dir=str(tmp_path))
        vm.attach(_service("backend", ("sites", "/sites")))
        vm.detach("backend")
        vm.remove_rootfs()
        assert not os.path.exists(vm.rootfs_root)
        assert vm.get_volume("sites") is not None

    def test_resolve_source(self, tmp_path):
        """Test resolving named volumes and paths."""
        vm = VolumeManager(base_dir=str(tmp_path))
        assert vm.resolve_source("my-data") == os.path.join(vm.volumes_root, "my-data")
        assert vm.resolve_source("./data") == os.path.join(str(tmp_path), "data")

    def test_resolve_target_cannot_escape(self, tmp_path):
        """Test that a mount target stays inside the service root."""
        vm = VolumeManager(base_dir=str(tmp_path))
        path = vm.resolve_target("/app/data", "web")
        assert path == os.path.join(vm.service_root("web"), "app", "data")
        with pytest.raises(ValueError):
            vm.resolve_target("/../../etc", "web")

"""
Pytest configuration and shared fixtures for pi-image-customizer tests.

External tools (losetup, mount, parted, systemd-nspawn, apt-get, dd) are never
run; the fakes here stand in for the mounter and the container spawner.
"""

from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from pi_image_customizer.collaborators import ContainerSpawner
from pi_image_customizer.configuration import Configuration, Parameters
from pi_image_customizer.lib import AuditLog
from pi_image_customizer.lifecycle import DiskImage, ImageMounter, MountHandle


class FakeMounter(ImageMounter):
	"""Pretends the mount directory is the mounted image root."""

	def __init__(self, root: Path):
		super().__init__(root, AuditLog(echo=False))
		self.acquired: List[DiskImage] = []
		self.released: List[MountHandle] = []
		self.loops: List[str] = []

	def acquire(self, image: DiskImage, boot: bool = True) -> MountHandle:
		self.acquired.append(image)
		self.mount_dir.mkdir(parents=True, exist_ok=True)
		handle = MountHandle(image, self.mount_dir, loop_device='/dev/loop9')
		handle.mounts.append(self.mount_dir)
		if boot:
			handle.boot = self.mount_dir / 'boot'
			handle.boot.mkdir(parents=True, exist_ok=True)
			handle.mounts.append(handle.boot)
		return handle

	def release(self, handle: MountHandle) -> None:
		self.released.append(handle)
		handle.mounts.clear()
		handle.loop_device = None

	def loop_devices_of(self, image: DiskImage) -> List[str]:
		return list(self.loops)


class FakeSpawner(ContainerSpawner):
	"""Records commands; returns the status of the first matching command prefix, else 0."""

	def __init__(self, returncodes: Optional[Dict[str, int]] = None):
		super().__init__()
		self.calls: List[List[str]] = []
		self.returncodes = returncodes or {}

	def run(self, root, argv, env=None, output=None) -> int:
		self.calls.append(list(argv))
		command = ' '.join(argv)
		for prefix, returncode in self.returncodes.items():
			if command.startswith(prefix):
				return returncode
		return 0


@pytest.fixture
def make_config(tmp_path):
	"""Factory for a Configuration pointing at a small image in tmp_path."""

	def factory(mode: str = 'customize', **params) -> Configuration:
		config = Configuration()
		config.mode = mode
		config.image = tmp_path / 'raspios.img'
		if not config.image.exists():
			config.image.write_bytes(b'\0' * 4096)
		config.mount_dir = tmp_path / 'mnt'
		config.params = Parameters(**params)
		config.audit = AuditLog(echo=False)
		return config

	return factory


@pytest.fixture
def mounter(tmp_path) -> FakeMounter:
	return FakeMounter(tmp_path / 'mnt')


@pytest.fixture
def spawner() -> FakeSpawner:
	return FakeSpawner()


@pytest.fixture
def parttool() -> Mock:
	return Mock()


@pytest.fixture
def copier() -> Mock:
	return Mock()


@pytest.fixture
def spawner_factory():
	"""FakeSpawner whose commands starting with the given prefixes return the given statuses."""
	return FakeSpawner

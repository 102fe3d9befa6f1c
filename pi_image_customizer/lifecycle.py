import contextlib
import os
import signal
import stat
import subprocess
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .collaborators import PartitionTool
from .lib import (AttachFailed, AuditLog, DeviceBusy, MountFailed, NotFileBacked, NotFoundError, PartitionToolError,
                  ResourceError)

DEFAULT_MOUNT_DIR = Path('/mnt/sdm')
MiB = 1024**2


def partition_path(device: str, number: int) -> str:
	# /dev/sdb -> /dev/sdb2, /dev/loop0 -> /dev/loop0p2, /dev/mmcblk0 -> /dev/mmcblk0p2
	if device[-1].isdigit():
		return f'{device}p{number}'
	return f'{device}{number}'


def partition_exists(partition: str) -> bool:
	return os.path.exists(partition)


def proc_mounts() -> List[Tuple[str, str]]:
	with open('/proc/mounts', 'r') as fd:
		return [(fields[0], fields[1]) for fields in (line.split(' ', 5) for line in fd) if len(fields) > 1]


class DiskImage(object):
	__slots__ = ['path']
	path: Path

	def __init__(self, path: Path):
		self.path = path

	def __repr__(self) -> str:
		return f'DiskImage({str(self.path)!r})'

	def exists(self) -> bool:
		return self.path.exists()

	@property
	def is_device(self) -> bool:
		return stat.S_ISBLK(os.stat(self.path).st_mode)

	@property
	def size(self) -> int:
		with open(self.path, 'rb') as fd:
			return fd.seek(0, os.SEEK_END)


class MountHandle(object):
	image: DiskImage
	loop_device: Optional[str]
	root: Path
	boot: Optional[Path]
	mounts: List[Path]

	def __init__(self, image: DiskImage, root: Path, loop_device: Optional[str] = None):
		self.image = image
		self.root = root
		self.loop_device = loop_device
		self.boot = None
		self.mounts = []

	def __repr__(self) -> str:
		return f'MountHandle({self.image!r}, root={str(self.root)!r}, loop={self.loop_device!r}, mounts={self.mounts!r})'

	@property
	def attached(self) -> bool:
		return bool(self.mounts) or self.loop_device is not None


class ImageMounter(object):
	settle_attempts: int = 10
	stop_attempts: int = 10
	stop_grace: float = 1.0

	def __init__(self, mount_dir: Path = DEFAULT_MOUNT_DIR, audit: Optional[AuditLog] = None):
		self.mount_dir = mount_dir
		self.audit = audit or AuditLog()

	def attach_loop(self, image: DiskImage) -> str:
		try:
			proc = subprocess.run(['losetup', '--show', '--find', '--partscan', str(image.path)],
			                      stdout=subprocess.PIPE,
			                      stderr=subprocess.PIPE,
			                      text=True)
		except OSError as e:
			raise AttachFailed(f'Unable to attach {str(image.path)!r} to a loop device: {e!s}')
		device = proc.stdout.strip()
		if proc.returncode != 0 or not device:
			raise AttachFailed(f'Unable to attach {str(image.path)!r} to a loop device: {proc.stderr.strip()}')
		self.audit.log(f'Attached {image.path} to {device}')
		return device

	def detach_loop(self, device: str) -> None:
		proc = subprocess.run(['losetup', '-d', device])
		if proc.returncode != 0:
			raise ResourceError(f'Unable to detach loop device {device}: exit status {proc.returncode}')
		self.audit.log(f'Detached {device}')

	def wait_for_partitions(self, device: str, numbers: Tuple[int, ...]) -> None:
		# The kernel may take a moment to create partition nodes after attaching.
		missing: List[str] = []
		for _ in range(self.settle_attempts):
			missing = [partition_path(device, n) for n in numbers if not partition_exists(partition_path(device, n))]
			if not missing:
				return
			time.sleep(0.5)
		raise AttachFailed(f'Unable to read the partition layout of {device}: Missing {", ".join(missing)}')

	@contextlib.contextmanager
	def loop_attached(self, image: DiskImage) -> Iterator[str]:
		device = self.attach_loop(image)
		try:
			self.wait_for_partitions(device, (1, 2))
			yield device
		finally:
			self.detach_loop(device)

	def mount(self, partition: str, mountpoint: Path) -> None:
		proc = subprocess.run(['mount', partition, str(mountpoint)])
		if proc.returncode != 0:
			raise MountFailed(f'Unable to mount {partition} on {str(mountpoint)}: exit status {proc.returncode}')

	def loop_devices_of(self, image: DiskImage) -> List[str]:
		try:
			proc = subprocess.run(['losetup', '-j', str(image.path)], stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
		except OSError as e:
			raise ResourceError(f'Unable to list loop devices for {str(image.path)!r}: {e!s}')
		if proc.returncode != 0:
			raise ResourceError(f'Unable to list loop devices for {str(image.path)!r}: {proc.stderr.strip()}')
		# /dev/loop3: [2049]:1835 (/srv/raspios.img)
		return [line.partition(':')[0] for line in proc.stdout.splitlines() if line.strip()]

	def check_mount_dir(self) -> None:
		if os.path.ismount(self.mount_dir):
			raise DeviceBusy(f'{str(self.mount_dir)} is already mounted. Is another run in progress?')

	def check_available(self, image: DiskImage) -> None:
		"""Refuse to touch an image that another run may have mounted or attached."""
		self.check_mount_dir()
		if image.exists() and not image.is_device:
			loops = self.loop_devices_of(image)
			if loops:
				raise DeviceBusy(f'{str(image.path)} is already attached to {", ".join(loops)}. Is another run in progress?')

	def acquire(self, image: DiskImage, boot: bool = True) -> MountHandle:
		root = self.mount_dir
		self.check_mount_dir()
		if not image.exists():
			raise NotFoundError(f'Image not found: {str(image.path)}')
		handle = MountHandle(image, root)
		try:
			if image.is_device:
				device = str(image.path)
				self.wait_for_partitions(device, (1, 2) if boot else (2,))
			else:
				handle.loop_device = device = self.attach_loop(image)
				self.wait_for_partitions(device, (1, 2))
			root.mkdir(parents=True, exist_ok=True)
			self.mount(partition_path(device, 2), root)
			handle.mounts.append(root)
			if boot:
				bootdir = root / 'boot/firmware'
				if not bootdir.is_dir():
					bootdir = root / 'boot'
				self.mount(partition_path(device, 1), bootdir)
				handle.mounts.append(bootdir)
				handle.boot = bootdir
		except Exception:
			self.release_after_error(handle)
			raise
		self.audit.log(f'Mounted {image.path} on {str(root)}')
		return handle

	def release_after_error(self, handle: MountHandle) -> None:
		try:
			self.release(handle)
		except ResourceError as e:
			print(f'Cleanup after a failed mount also failed: {e!s}')

	def release(self, handle: MountHandle) -> None:
		if not handle.attached:
			return
		errors: List[str] = []
		if handle.mounts:
			self.stop_rooted_processes(handle.root)
		# Deepest first: anything mounted below the root during an interactive session, then boot, then root.
		targets = [Path(mountpoint) for _, mountpoint in self.mounts_below(handle.root)]
		for mountpoint in handle.mounts:
			if mountpoint not in targets:
				targets.append(mountpoint)
		targets.sort(key=lambda p: (-len(str(p)), str(p)))
		for mountpoint in targets:
			proc = subprocess.run(['umount', str(mountpoint)])
			if proc.returncode != 0:
				errors.append(f'Unable to unmount {str(mountpoint)}: exit status {proc.returncode}')
			elif mountpoint in handle.mounts:
				handle.mounts.remove(mountpoint)
		if handle.loop_device is not None:
			try:
				self.detach_loop(handle.loop_device)
				handle.loop_device = None
			except ResourceError as e:
				errors.append(str(e))
		if errors:
			raise ResourceError('\n'.join(errors) + f'\nWarning: You may need to manually clean up {str(handle.root)}.')
		handle.boot = None
		self.audit.log(f'Released {handle.image.path}')

	@contextlib.contextmanager
	def mounted(self, image: DiskImage, boot: bool = True) -> Iterator[MountHandle]:
		handle = self.acquire(image, boot=boot)
		try:
			yield handle
		finally:
			self.release(handle)

	def mounts_below(self, root: Path) -> List[Tuple[str, str]]:
		prefix = str(root) + '/'
		return [(source, mountpoint) for source, mountpoint in proc_mounts() if mountpoint.startswith(prefix)]

	def stop_rooted_processes(self, root: Path) -> None:
		# First pass asks politely, later passes do not.
		for attempt in range(self.stop_attempts):
			pids = rooted_processes(root)
			if not pids:
				break
			sig = signal.SIGTERM if attempt == 0 else signal.SIGKILL
			for pid, name in pids.items():
				self.audit.log(f'Sending {sig.name} to process {pid} ({name}) still running in {str(root)}')
				with contextlib.suppress(ProcessLookupError):
					os.kill(pid, sig)
			time.sleep(self.stop_grace)
		for pid, name in rooted_processes(root, include_cwd=True).items():
			self.audit.log(f'% Process {pid} ({name}) is still using {str(root)}; unmounting may fail')


def rooted_processes(root: Path, include_cwd: bool = False) -> Dict[int, str]:
	"""
	Processes whose root directory is the image root, as with a container
	spawned on it. With include_cwd, also processes working somewhere below
	it, such as a background job left behind by a --mount shell.
	"""
	root = root.resolve()
	found: Dict[int, str] = {}
	for entry in os.listdir('/proc'):
		if not entry.isdigit() or int(entry) == os.getpid():
			continue
		try:
			proc_root = Path(os.readlink(f'/proc/{entry}/root'))
			cwd = Path(os.readlink(f'/proc/{entry}/cwd')) if include_cwd else None
			with open(f'/proc/{entry}/comm', 'r') as fd:
				name = fd.read().strip()
		except OSError:
			continue  # Exited, or not ours to inspect.
		if proc_root == root or (cwd is not None and (cwd == root or root in cwd.parents)):
			found[int(entry)] = name
	return found


def is_device_busy(device: Path) -> bool:
	device_str = str(device)
	for source, _ in proc_mounts():
		if source == device_str:
			return True
		if not source.startswith(device_str):
			continue
		suffix = source[len(device_str):]
		# /dev/loop1 owns /dev/loop1p2 but not /dev/loop10; /dev/sdb owns /dev/sdb1 but not /dev/sdba1.
		if device_str[-1].isdigit():
			if suffix.startswith('p') and suffix[1:].isdigit():
				return True
		elif suffix.isdigit():
			return True
	return False


def extend_and_resize(image: DiskImage,
                      delta_mb: int,
                      mounter: ImageMounter,
                      parttool: Optional[PartitionTool] = None) -> int:
	parttool = parttool or PartitionTool()
	if not image.exists():
		raise NotFoundError(f'Image not found: {str(image.path)}')
	if image.is_device:
		raise NotFileBacked(f'Unable to extend {str(image.path)}: Only file images can be extended')
	old_size = image.size
	mounter.audit.log(f'Extending {image.path} by {delta_mb}MB')
	with open(image.path, 'r+b') as fd:
		fd.truncate(old_size + delta_mb * MiB)  # Zero filled.
	new_size = parttool.disk_size(image.path)
	if new_size != old_size + delta_mb * MiB:
		raise PartitionToolError(
		    f'parted reports {new_size} bytes for {str(image.path)!r}, expected {old_size + delta_mb * MiB}'
		)
	parttool.resize_partition(image.path, 2, new_size - 1)
	with mounter.loop_attached(image) as device:
		parttool.grow_filesystem(partition_path(device, 2))
	end = parttool.partition_end(image.path, 2)
	mounter.audit.log(f'Resized partition 2 of {image.path} to end at {end} bytes')
	return end

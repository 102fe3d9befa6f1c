import enum
import os
import shutil
import subprocess
import time
import urllib.parse
from abc import abstractmethod
from pathlib import Path
from typing import IO, TYPE_CHECKING, Callable, Dict, List, Optional

import requests
import tqdm

from .collaborators import BlockCopier, ContainerSpawner, PackageManager, PartitionTool
from .lib import CollaboratorError, DeviceBusy, NotFoundError, PipelineError, ValidationError
from .lifecycle import DiskImage, ImageMounter, MountHandle, extend_and_resize, is_device_busy
from .pseudofiles import IncrementalDecompressor, IncrementalHasher, IncrementalTQDMProxy, decompressor_for
from .store import CPARAMS_PATH, OVERLAY_PATH, ConfigStore, SettingsFile

if TYPE_CHECKING:
	# Pseudo-circular import for type checking/IDEs.
	from .configuration import Configuration

SDM_DIR = 'etc/sdm'
RUNTIME_DIR = 'usr/local/sdm'
MARKER_PATH = 'etc/sdm/custom.ran'
HISTORY_PATH = 'etc/sdm/history'
APTLOG_PATH = 'etc/sdm/apt.log'
APT_PROXY_PATH = 'etc/apt/apt.conf.d/02proxy'
USER_GROUPS = 'sudo,adm,dialout,audio,video,plugdev,users,input'


def in_image(path: str) -> str:
	return '/' + path.lstrip('/')


class Operation(object):
	@abstractmethod
	def run(self, config: 'Configuration', handle: Optional[MountHandle]) -> None:
		...


class OperationFetch(Operation):
	block_size: int = 1024 * 1024

	def run(self, config: 'Configuration', handle: Optional[MountHandle] = None) -> None:
		url = config.fetch_url
		if url is None:
			return
		config.audit.log(f'Downloading {url} to {config.image}')
		try:
			rsp = requests.get(url, stream=True, timeout=60)
		except requests.RequestException as e:
			raise NotFoundError(f'Unable to fetch image from {url}: {e!s}')
		if rsp.status_code != 200:
			raise NotFoundError(f'Unable to fetch image from {url}: HTTP {rsp.status_code}')
		total = int(rsp.headers.get('content-length') or 0) or None
		decompressor = decompressor_for(urllib.parse.urlparse(url).path)

		try:
			with tqdm.tqdm(total=total, unit='B', unit_scale=True, desc='fetch') as progress:
				# Set up the output pipeline
				pipeline: IO[bytes] = open(config.image, 'wb', buffering=self.block_size)
				if decompressor is not None:
					pipeline = IncrementalDecompressor(pipeline, decompressor, block_size=self.block_size)
				pipeline = hasher = IncrementalHasher('sha256', pipeline)
				pipeline = IncrementalTQDMProxy(pipeline, progress)
				with pipeline:
					for chunk in rsp.iter_content(self.block_size):
						pipeline.write(chunk)
		except (OSError, ValueError, requests.RequestException) as e:
			config.image.unlink(missing_ok=True)
			raise PipelineError(f'Download of {url} failed: {e!s}')

		if config.fetch_sha256 and config.fetch_sha256.lower() != hasher.hexdigest():
			config.image.unlink(missing_ok=True)
			raise ValidationError(
			    f'Download failed due to checksum mismatch:\n'
			    f'Source: {url}\n'
			    f'Expected SHA256: {config.fetch_sha256}\n'
			    f'Actual SHA256:   {hasher.hexdigest()}\n'
			    f'Target file deleted.'
			)
		config.audit.log(f'Downloaded {config.image} (sha256 {hasher.hexdigest()})')


class OperationInject(Operation):
	def run(self, config: 'Configuration', handle: Optional[MountHandle]) -> None:
		if handle is None:
			raise PipelineError('Unable to inject files: The image is not mounted.')
		root = handle.root
		params = config.params
		config.audit.log('* Phase 0: staging files in the image')

		(root / SDM_DIR).mkdir(parents=True, exist_ok=True)
		runtime = root / RUNTIME_DIR
		runtime.mkdir(parents=True, exist_ok=True)
		package = Path(__file__).resolve().parent
		shutil.copytree(package,
		                runtime / package.name,
		                dirs_exist_ok=True,
		                ignore=shutil.ignore_patterns('__pycache__', '*.pyc'))
		config.audit.log(f'Copied runtime files to {in_image(RUNTIME_DIR)}')

		for source in (params.cscript, params.appfile, params.xappfile):
			if source:
				dest = runtime / Path(source).name
				shutil.copy2(source, dest)
				config.audit.log(f'Copied {source} to {in_image(RUNTIME_DIR)}/{dest.name}')
		if params.cscript:
			(runtime / Path(params.cscript).name).chmod(0o755)

		self.write_boot_settings(config, handle)
		if params.aptcache:
			proxy = root / APT_PROXY_PATH
			proxy.parent.mkdir(parents=True, exist_ok=True)
			proxy.write_text(f'Acquire::http::Proxy "http://{params.aptcache}:3142";\n', encoding='utf8')
			config.audit.log(f'Using apt-cacher-ng on {params.aptcache}')

		ConfigStore(root).write(params.to_store())
		config.audit.log(f'Saved parameters to {in_image(CPARAMS_PATH)}')

		if params.cscript:
			self.run_custom_script(config, handle)

		(root / MARKER_PATH).write_text(time.strftime(params.datefmt) + '\n', encoding='utf8')
		config.audit.log('* Phase 0 completed')

	def write_boot_settings(self, config: 'Configuration', handle: MountHandle) -> None:
		params = config.params
		overlay: Dict[str, str] = dict(params.bootset)
		if params.svcenable:
			overlay['service-enable'] = ','.join(params.svcenable)
		if params.svcdisable:
			overlay['service-disable'] = ','.join(params.svcdisable)
		if params.restart:
			overlay['restart'] = '1'
			if params.reboot:
				overlay['reboot_wait'] = params.reboot
		if overlay:
			SettingsFile(handle.root / OVERLAY_PATH).update(overlay)
			for key, value in overlay.items():
				config.audit.log(f'First boot setting {key}={value}')

		bootconfig: Dict[str, str] = {}
		if params.hdmigroup:
			bootconfig['hdmi_group'] = params.hdmigroup
			bootconfig['hdmi_mode'] = params.hdmimode
		if params.hdmiforcehotplug:
			bootconfig['hdmi_force_hotplug'] = '1'
		bootconfig.update(params.bootconfig)
		if bootconfig:
			if handle.boot is None:
				raise PipelineError('Unable to edit config.txt: The boot partition is not mounted.')
			SettingsFile(handle.boot / 'config.txt').update(bootconfig)
			for key, value in bootconfig.items():
				config.audit.log(f'config.txt setting {key}={value}')

	def run_custom_script(self, config: 'Configuration', handle: MountHandle) -> None:
		params = config.params
		command = [str(Path(params.cscript).resolve()), '0']
		config.audit.log(f'Running custom script {params.cscript} Phase 0')
		env = dict(os.environ, SDMPT=str(handle.root), SDMNSPAWN='Phase0', CSRC=params.csrc)
		try:
			proc = subprocess.run(command, env=env)
		except OSError as e:
			raise CollaboratorError(command, 127, f'Custom script ({e!s})')
		if proc.returncode != 0:
			raise CollaboratorError(command, proc.returncode, 'Custom script')


class OperationCustomize(Operation):
	def __init__(self, spawner: ContainerSpawner):
		self.spawner = spawner
		self.apt_failures: List[str] = []

	def run(self, config: 'Configuration', handle: Optional[MountHandle]) -> None:
		if handle is None:
			raise PipelineError('Unable to customize: The image is not mounted.')
		root = handle.root
		params = config.params
		config.audit.log('* Phase 1: customizing inside the image')
		apt = PackageManager(self.spawner, root, root / APTLOG_PATH)

		if not params.has_option('noupdate'):
			self.apt(config, apt, 'update')
		if not params.has_option('noupgrade'):
			self.apt(config, apt, 'upgrade')
		if params.has_option('apps') and params.apps:
			self.apt(config, apt, f'install --no-install-recommends {params.apps}')
		if params.has_option('xapps') and params.xapps:
			self.apt(config, apt, f'install --no-install-recommends {params.xapps}')
		if not params.has_option('noautoremove'):
			self.apt(config, apt, 'autoremove')

		if params.user:
			useradd = ['useradd', '-m', '-s', '/bin/bash', '-G', USER_GROUPS]
			if params.uid:
				useradd += ['-u', params.uid]
			self.target(config, root, useradd + [params.user], f'Adding user {params.user}')
		if params.ssh == 'service':
			self.target(config, root, ['systemctl', 'enable', 'ssh'], 'Enabling SSH service')
		elif params.ssh == 'socket':
			self.target(config, root, ['systemctl', 'disable', 'ssh'], 'Disabling SSH service')
			self.target(config, root, ['systemctl', 'enable', 'ssh.socket'], 'Enabling SSH socket')
		else:
			self.target(config, root, ['systemctl', 'disable', 'ssh'], 'Disabling SSH')
		for value, function, what in ((params.locale, 'do_change_locale', 'locale'),
		                              (params.timezone, 'do_change_timezone', 'timezone'),
		                              (params.keymap, 'do_configure_keyboard', 'keymap'),
		                              (params.wificountry, 'do_wifi_country', 'WiFi country')):
			if value:
				self.target(config, root, ['raspi-config', 'nonint', function, value], f'Setting {what} to {value}')

		if params.cscript:
			script = f'{in_image(RUNTIME_DIR)}/{Path(params.cscript).name}'
			config.audit.log(f'Running custom script {script} Phase 1')
			self.spawner.check(root, [script, '1'], env={'SDMNSPAWN': 'Phase1', 'CSRC': params.csrc})

		if self.apt_failures:
			config.audit.log(f'% Phase 1 completed with package manager failures: {"; ".join(self.apt_failures)}')
		else:
			config.audit.log('* Phase 1 completed')

	def apt(self, config: 'Configuration', apt: PackageManager, subcommand: str) -> None:
		config.audit.log(f'apt-get {subcommand}')
		returncode = apt.run(subcommand)
		if returncode == 0:
			return
		if config.params.aptfailure == 'fatal':
			raise CollaboratorError(['apt-get', subcommand], returncode, 'Package manager')
		self.apt_failures.append(f'apt-get {subcommand} ({returncode})')
		config.audit.log(f'? apt-get {subcommand} exited with status {returncode}; continuing')

	def target(self, config: 'Configuration', root: Path, argv: List[str], what: str) -> None:
		config.audit.log(what)
		self.spawner.check(root, argv)


class OperationInteractive(Operation):
	def __init__(self, spawner: ContainerSpawner, chroot: bool):
		self.spawner = spawner
		self.chroot = chroot

	def run(self, config: 'Configuration', handle: Optional[MountHandle]) -> None:
		if handle is None:
			raise PipelineError('Unable to start a shell: The image is not mounted.')
		print(f'Starting an interactive shell in the {"target" if self.chroot else "host"}.')
		if self.chroot:
			self.spawner.shell(handle.root)
		else:
			print(f'The image is mounted on {str(handle.root)}. Exit the shell to unmount it.')
			try:
				subprocess.run([os.environ.get('SHELL', '/bin/bash')], cwd=handle.root)
			except OSError as e:
				raise CollaboratorError(['/bin/bash'], 127, f'Interactive shell ({e!s})')


class OperationBurn(Operation):
	def __init__(self, copier: BlockCopier, parttool: PartitionTool):
		self.copier = copier
		self.parttool = parttool

	def copy(self, config: 'Configuration') -> DiskImage:
		target = config.burn_target
		if target is None:
			raise PipelineError('No burn target was given.')
		if config.mode == 'burn' and is_device_busy(target):
			raise DeviceBusy(f'Device {str(target)} is mounted. Unmount it before burning.')
		config.audit.log(f'Burning {config.image} to {target}')
		self.copier.copy(config.image, target)
		burned = DiskImage(target)
		if burned.is_device:
			self.parttool.reread(target)
		return burned

	def run(self, config: 'Configuration', handle: Optional[MountHandle]) -> None:
		if handle is None:
			raise PipelineError('Unable to finish burn: The burned image is not mounted.')
		root = handle.root
		params = config.params
		if params.hostname:
			(root / 'etc/hostname').write_text(params.hostname + '\n', encoding='utf8')
			self.set_hosts_entry(root / 'etc/hosts', params.hostname)
			config.audit.log(f'Hostname set to {params.hostname}')

		store = ConfigStore(root)
		stored = store.read() if store.exists() else {}
		merged = params.merge_stored(stored).to_store()
		record = dict(stored)
		for key in ('user', 'uid', 'locale', 'timezone', 'keymap', 'wificountry', 'cscript', 'csrc', 'hostname'):
			if merged.get(key):
				record[key] = merged[key]
		store.write(record)
		config.audit.log(f'Burned {config.image} to {config.burn_target}')

	@staticmethod
	def set_hosts_entry(hosts: Path, hostname: str) -> None:
		lines = hosts.read_text(encoding='utf8').splitlines() if hosts.exists() else []
		lines = [line for line in lines if not line.startswith('127.0.1.1')]
		lines.append(f'127.0.1.1\t{hostname}')
		hosts.write_text('\n'.join(lines) + '\n', encoding='utf8')


class Phase(enum.Enum):
	START = 'start'
	FETCH = 'fetch'
	EXTEND = 'extend'
	MOUNT = 'mount'
	CHECK_DONE = 'check_done'
	INJECT = 'inject'
	CUSTOMIZE = 'customize'
	INTERACTIVE = 'interactive'
	BURN = 'burn'
	CLEANUP = 'cleanup'
	DONE = 'done'


class PhaseOrchestrator(object):
	handle: Optional[MountHandle]
	trace: List[Phase]

	def __init__(self,
	             config: 'Configuration',
	             mounter: Optional[ImageMounter] = None,
	             spawner: Optional[ContainerSpawner] = None,
	             parttool: Optional[PartitionTool] = None,
	             copier: Optional[BlockCopier] = None):
		self.config = config
		self.mounter = mounter or ImageMounter(config.mount_dir, config.audit)
		self.spawner = spawner or ContainerSpawner(config.params.nspawnsw)
		self.parttool = parttool or PartitionTool()
		self.copier = copier or BlockCopier(config.params.ddsw)
		self.handle = None
		self.trace = []
		self.handlers: Dict[Phase, Callable[[], Phase]] = {
		    Phase.START: self.start,
		    Phase.FETCH: self.fetch,
		    Phase.EXTEND: self.extend,
		    Phase.MOUNT: self.mount,
		    Phase.CHECK_DONE: self.check_done,
		    Phase.INJECT: self.inject,
		    Phase.CUSTOMIZE: self.customize,
		    Phase.INTERACTIVE: self.interactive,
		    Phase.BURN: self.burn,
		}

	def run(self) -> None:
		phase = Phase.START
		try:
			while phase is not Phase.CLEANUP and phase is not Phase.DONE:
				self.trace.append(phase)
				phase = self.handlers[phase]()
		except BaseException:
			self.cleanup(after_error=True)
			raise
		self.cleanup()

	def cleanup(self, after_error: bool = False) -> None:
		self.trace.append(Phase.CLEANUP)
		handle, self.handle = self.handle, None
		if handle is not None:
			if after_error:
				print('\n'
				      'Caught exit with the target still mounted.\n'
				      'Attempting to unmount the target.\n'
				      '')
			self.config.audit.detach()
			try:
				self.mounter.release(handle)
			except PipelineError as e:
				if not after_error:
					raise
				print(f'Unable to unmount the target: {e!s}')
		self.trace.append(Phase.DONE)

	def acquire(self, image: DiskImage, boot: bool = True) -> None:
		self.handle = self.mounter.acquire(image, boot=boot)
		self.config.audit.attach(self.handle.root / HISTORY_PATH)

	def start(self) -> Phase:
		mode = self.config.mode
		if mode in ('burn', 'burnfile'):
			return Phase.BURN
		if mode in ('mount', 'explore'):
			return Phase.MOUNT
		if self.config.fetch_url is not None:
			return Phase.FETCH
		return Phase.EXTEND

	def fetch(self) -> Phase:
		OperationFetch().run(self.config)
		return Phase.EXTEND

	def extend(self) -> Phase:
		params = self.config.params
		image = DiskImage(self.config.image)
		if self.config.mode == 'extend':
			self.mounter.check_available(image)
			extend_and_resize(image, params.xmb, self.mounter, self.parttool)
			return Phase.DONE
		if params.noextend or params.xmb <= 0:
			return Phase.MOUNT
		if image.is_device:
			print(f'{str(image.path)} is a device; not extending')
			return Phase.MOUNT
		self.mounter.check_available(image)
		extend_and_resize(image, params.xmb, self.mounter, self.parttool)
		return Phase.MOUNT

	def mount(self) -> Phase:
		self.acquire(DiskImage(self.config.image))
		if self.config.mode in ('mount', 'explore'):
			return Phase.INTERACTIVE
		return Phase.CHECK_DONE

	def check_done(self) -> Phase:
		if self.handle is None:
			raise PipelineError('Unable to check for a previous customization: The image is not mounted.')
		if (self.handle.root / MARKER_PATH).exists() and not self.config.params.redo:
			self.config.audit.log(f'{self.config.image} is already customized; skipping Phase 0 and Phase 1')
			return Phase.INTERACTIVE
		return Phase.INJECT

	def inject(self) -> Phase:
		OperationInject().run(self.config, self.handle)
		return Phase.CUSTOMIZE

	def customize(self) -> Phase:
		OperationCustomize(self.spawner).run(self.config, self.handle)
		return Phase.INTERACTIVE

	def interactive(self) -> Phase:
		if self.config.params.batch:
			return Phase.CLEANUP
		OperationInteractive(self.spawner, chroot=self.config.mode != 'mount').run(self.config, self.handle)
		return Phase.CLEANUP

	def burn(self) -> Phase:
		operation = OperationBurn(self.copier, self.parttool)
		burned = operation.copy(self.config)
		self.acquire(burned, boot=False)
		operation.run(self.config, self.handle)
		return Phase.CLEANUP

import argparse
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, NoReturn, Optional, Sequence, Tuple

import pydantic
import yaml
from typing_extensions import Literal

from . import validation
from .lib import AuditLog, NotFoundError, ValidationError
from .lifecycle import DEFAULT_MOUNT_DIR

POPTIONS = frozenset({'apps', 'xapps', 'noupdate', 'noupgrade', 'noautoremove'})
BOOTSET_KEYS = frozenset({
    'audio', 'blanking', 'boot_behaviour', 'boot_splash', 'boot_wait', 'camera', 'i2c', 'net_names', 'onewire',
    'overscan', 'pi4video', 'pixdub', 'powerled', 'rgpio', 'serial', 'spi'
})
SSH_MODES = ('service', 'socket', 'none')
APT_FAILURE_POLICIES = ('continue', 'fatal')
DEFAULT_XMB = '0'

STORE_FIELDS: Tuple[str, ...] = (
    'user', 'uid', 'hostname', 'ssh', 'locale', 'timezone', 'keymap', 'wificountry', 'apps', 'appfile', 'xapps',
    'xappfile', 'poptions', 'bootset', 'bootconfig', 'svcenable', 'svcdisable', 'hdmigroup', 'hdmimode',
    'hdmiforcehotplug', 'restart', 'reboot', 'cscript', 'csrc', 'aptcache', 'aptfailure', 'datefmt'
)
MERGE_KEYS: Tuple[str, ...] = ('user', 'uid', 'locale', 'timezone', 'keymap', 'wificountry', 'cscript', 'csrc')


def resolve_app_list(value: str) -> Tuple[str, Optional[Path]]:
	if not value.startswith('@'):
		return ' '.join(value.replace(',', ' ').split()), None
	listfile = Path(value[1:])
	if not listfile.is_file():
		raise NotFoundError(f'App list file not found: {str(listfile)}')
	tokens: List[str] = []
	with open(listfile, 'r', encoding='utf8') as fd:
		for line in fd:
			line = line.partition('#')[0].strip()
			if line:
				tokens.extend(line.split())
	return ' '.join(tokens), listfile


def _store_value(value: Any) -> str:
	if isinstance(value, bool):
		return '1' if value else ''
	if isinstance(value, (frozenset, set)):
		return ','.join(sorted(value))
	if isinstance(value, (tuple, list)):
		return ','.join(value)
	if isinstance(value, dict):
		return ','.join(f'{k}:{v}' for k, v in value.items())
	return '' if value is None else str(value)


class Parameters(pydantic.BaseModel):
	model_config = pydantic.ConfigDict(frozen=True)

	user: str = ''
	uid: str = ''
	hostname: str = ''
	ssh: Literal['service', 'socket', 'none'] = 'service'
	locale: str = ''
	timezone: str = ''
	keymap: str = ''
	wificountry: str = ''
	apps: str = ''
	appfile: str = ''
	xapps: str = ''
	xappfile: str = ''
	poptions: FrozenSet[str] = frozenset()
	bootset: Dict[str, str] = {}
	bootconfig: Dict[str, str] = {}
	svcenable: Tuple[str, ...] = ()
	svcdisable: Tuple[str, ...] = ()
	hdmigroup: str = ''
	hdmimode: str = ''
	hdmiforcehotplug: bool = False
	restart: bool = False
	reboot: str = ''
	cscript: str = ''
	csrc: str = ''
	aptcache: str = ''
	aptfailure: Literal['continue', 'fatal'] = 'continue'
	datefmt: str = AuditLog.DEFAULT_DATEFMT
	xmb: int = int(DEFAULT_XMB)
	noextend: bool = False
	redo: bool = False
	batch: bool = False
	nspawnsw: str = ''
	ddsw: str = ''

	def has_option(self, option: str) -> bool:
		return option in self.poptions

	def to_store(self) -> Dict[str, str]:
		return {name: _store_value(getattr(self, name)) for name in STORE_FIELDS}

	def merge_stored(self, stored: Dict[str, str], keys: Sequence[str] = MERGE_KEYS) -> 'Parameters':
		update = {key: stored[key] for key in keys if not getattr(self, key) and stored.get(key)}
		return self.model_copy(update=update)


class ArgumentParser(argparse.ArgumentParser):
	def error(self, message: str) -> NoReturn:
		raise ValidationError(message)


def build_parser() -> ArgumentParser:
	parser = ArgumentParser(prog='pi-image-customizer',
	                        description='Customize, mount, explore and burn Raspberry Pi OS disk images')
	modes = parser.add_argument_group('modes (at most one; --customize is the default)')
	modes.add_argument('--customize', action='store_true', help='Customize the image')
	modes.add_argument('--burn', metavar='DEVICE', type=Path, default=None, help='Burn the image to a device')
	modes.add_argument('--burnfile', metavar='FILE', type=Path, default=None, help='Burn the image to a new file')
	modes.add_argument('--mount', action='store_true', help='Mount the image and start a host shell')
	modes.add_argument('--explore', action='store_true', help='Start a container shell in the image')
	modes.add_argument('--extend', action='store_true', help='Only extend the image by --xmb MB')

	parser.add_argument('image', type=Path, help='The image file or block device')
	parser.add_argument('--config', type=Path, default=None, help='YAML file with defaults for any option')
	parser.add_argument('--user', default='', help='Create this user in the image')
	parser.add_argument('--uid', default=None, help='UID for --user')
	parser.add_argument('--host', dest='hostname', default='', help='Hostname written when burning')
	parser.add_argument('--ssh', choices=SSH_MODES, default='service', help='How SSH is enabled')
	parser.add_argument('--locale', default='')
	parser.add_argument('--timezone', default='')
	parser.add_argument('--keymap', default='')
	parser.add_argument('--wifi-country', dest='wificountry', default='')
	parser.add_argument('--apps', default='', help='Packages to install, or @file with one list per line')
	parser.add_argument('--xapps', default='', help='X11 packages to install, or @file')
	parser.add_argument('--poptions', default='', help=f'Phase options: {",".join(sorted(POPTIONS))}')
	parser.add_argument('--bootset', default='', help='First boot settings as key:value,key:value')
	parser.add_argument('--bootconfig', default='', help='config.txt settings as key:value,key:value')
	parser.add_argument('--svc-enable', dest='svcenable', default='', help='Services to enable at first boot')
	parser.add_argument('--svc-disable', dest='svcdisable', default='', help='Services to disable at first boot')
	parser.add_argument('--hdmigroup', default=None)
	parser.add_argument('--hdmimode', default=None)
	parser.add_argument('--hdmi-force-hotplug', dest='hdmiforcehotplug', action='store_true')
	parser.add_argument('--restart', action='store_true', help='Restart the system after first boot')
	parser.add_argument('--norestart', action='store_true', help='Do not restart after first boot')
	parser.add_argument('--reboot', metavar='SECONDS', default=None, help='Restart after first boot after a delay')
	parser.add_argument('--cscript', default='', help='Custom script run in Phase 0 and Phase 1')
	parser.add_argument('--csrc', default='', help='Source directory handed to the custom script')
	parser.add_argument('--aptcache', default='', help='apt-cacher-ng host used during customization')
	parser.add_argument('--apt-failure', dest='aptfailure', choices=APT_FAILURE_POLICIES, default='continue')
	parser.add_argument('--xmb', default=DEFAULT_XMB, help='MB to extend the image by')
	parser.add_argument('--noextend', action='store_true', help='Do not extend the image')
	parser.add_argument('--redo-customize', dest='redo', action='store_true', help='Customize an image again')
	parser.add_argument('--batch', action='store_true', help='Do not start a shell after customizing')
	parser.add_argument('--nspawnsw', default='', help='Extra switches for systemd-nspawn')
	parser.add_argument('--ddsw', default='', help='Switches for dd when burning')
	parser.add_argument('--datefmt', default=AuditLog.DEFAULT_DATEFMT, help='Timestamp format for the audit log')
	parser.add_argument('--mount-dir', dest='mount_dir', type=Path, default=DEFAULT_MOUNT_DIR)
	parser.add_argument('--fetch', metavar='URL', default=None, help='Download the image first (.xz/.bz2 ok)')
	parser.add_argument('--sha256', default=None, help='Expected SHA-256 of the downloaded file')
	return parser


def option_names(parser: argparse.ArgumentParser) -> Dict[str, argparse.Action]:
	"""Every spelling of every optional setting: --wifi-country, wifi-country, wifi_country and wificountry."""
	names: Dict[str, argparse.Action] = {}
	for action in parser._actions:
		if not action.option_strings or isinstance(action, argparse._HelpAction) or action.dest == 'config':
			continue
		for name in [action.dest] + [opt.lstrip('-') for opt in action.option_strings]:
			names[name] = action
			names[name.replace('-', '_')] = action
			names[name.replace('_', '-')] = action
	return names


def load_defaults(path: Path, parser: argparse.ArgumentParser) -> Dict[str, Any]:
	if not path.exists():
		raise NotFoundError(f'Configuration file not found: {str(path)}')
	try:
		with open(path, 'rb') as fd:
			raw = yaml.safe_load(fd)
	except (OSError, yaml.YAMLError) as e:
		raise ValidationError(f'Unable to load configuration file {str(path)}: {e!s}')
	if raw is None:
		return {}
	if not isinstance(raw, dict):
		raise ValidationError('The configuration file must be a yaml mapping object.')

	names = option_names(parser)
	defaults: Dict[str, Any] = {}
	problems: List[str] = []
	for key, value in raw.items():
		action = names.get(str(key))
		if action is None:
			problems.append(f'{key}: unknown setting')
		elif action.nargs == 0:
			# Switches take yes/no, never a string that argparse would treat as set.
			if not isinstance(value, bool):
				problems.append(f'{key}: must be true or false')
			else:
				defaults[action.dest] = value
		elif value is None:
			defaults[action.dest] = value
		elif isinstance(value, list):
			defaults[action.dest] = ','.join(str(v) for v in value)
		elif isinstance(value, dict):
			defaults[action.dest] = ','.join(f'{k}:{v}' for k, v in value.items())
		elif isinstance(value, bool):
			problems.append(f'{key}: expected a value, not {str(value).lower()}')
		else:
			defaults[action.dest] = str(value)
	if problems:
		raise ValidationError(f'Invalid settings in {str(path)}: {"; ".join(problems)}')
	return defaults


class Configuration(object):
	mode: str
	image: Path
	burn_target: Optional[Path]
	mount_dir: Path
	fetch_url: Optional[str]
	fetch_sha256: Optional[str]
	params: Parameters
	audit: AuditLog

	def __init__(self):
		self.burn_target = None
		self.mount_dir = DEFAULT_MOUNT_DIR
		self.fetch_url = None
		self.fetch_sha256 = None
		self.params = Parameters()
		self.audit = AuditLog()

	def parse_args(self, argv: Optional[Sequence[str]] = None) -> None:
		parser = build_parser()
		args = parser.parse_args(argv)
		if args.config is not None:
			parser.set_defaults(**load_defaults(args.config, parser))
			args = parser.parse_args(argv)
		self.apply(args)

	def apply(self, args: argparse.Namespace) -> None:
		self.mode = validation.check_conflicts(
		    {
		        'customize': args.customize,
		        'burn': args.burn is not None,
		        'burnfile': args.burnfile is not None,
		        'mount': args.mount,
		        'explore': args.explore,
		        'extend': args.extend,
		    },
		    restart=args.restart or args.reboot is not None,
		    norestart=args.norestart,
		)
		validation.check_numeric(reboot=args.reboot,
		                         hdmigroup=args.hdmigroup,
		                         hdmimode=args.hdmimode,
		                         uid=args.uid,
		                         xmb=args.xmb)
		validation.check_paired('hdmigroup', args.hdmigroup, 'hdmimode', args.hdmimode)
		if self.mode == 'extend' and int(args.xmb or 0) <= 0:
			raise ValidationError('--extend requires --xmb with a size greater than 0')
		poptions = validation.validate_list(args.poptions, POPTIONS, '--poptions')
		bootset = validation.validate_keyvalue_list(args.bootset, BOOTSET_KEYS, '--bootset')
		bootconfig = validation.validate_keyvalue_list(args.bootconfig, None, '--bootconfig')

		# Everything referenced must exist before anything is touched.
		self.image = args.image
		self.fetch_url = args.fetch
		self.fetch_sha256 = args.sha256
		if self.fetch_url is not None:
			if self.mode not in ('customize', 'extend'):
				raise ValidationError('--fetch can only be used when customizing or extending')
			if self.image.exists():
				raise ValidationError(f'Refusing to overwrite {str(self.image)} with a download')
		elif not self.image.exists():
			raise NotFoundError(f'Image not found: {str(self.image)}')
		if args.cscript and not Path(args.cscript).is_file():
			raise NotFoundError(f'Custom script not found: {args.cscript}')
		if args.csrc and not Path(args.csrc).is_dir():
			raise NotFoundError(f'Custom source directory not found: {args.csrc}')
		apps, appfile = resolve_app_list(args.apps)
		xapps, xappfile = resolve_app_list(args.xapps)
		if self.mode == 'burn':
			self.burn_target = args.burn
			if not self.burn_target.exists():
				raise NotFoundError(f'Burn device not found: {str(self.burn_target)}')
		elif self.mode == 'burnfile':
			self.burn_target = args.burnfile
			if self.burn_target.exists():
				raise ValidationError(f'Burn file {str(self.burn_target)} already exists')
		self.mount_dir = args.mount_dir

		try:
			self.params = Parameters(
			    user=args.user,
			    uid=args.uid or '',
			    hostname=args.hostname,
			    ssh=args.ssh,
			    locale=args.locale,
			    timezone=args.timezone,
			    keymap=args.keymap,
			    wificountry=args.wificountry,
			    apps=apps,
			    appfile=str(appfile or ''),
			    xapps=xapps,
			    xappfile=str(xappfile or ''),
			    poptions=poptions,
			    bootset=bootset,
			    bootconfig=bootconfig,
			    svcenable=tuple(validation.split_list(args.svcenable)),
			    svcdisable=tuple(validation.split_list(args.svcdisable)),
			    hdmigroup=args.hdmigroup or '',
			    hdmimode=args.hdmimode or '',
			    hdmiforcehotplug=args.hdmiforcehotplug,
			    restart=args.restart or args.reboot is not None,
			    reboot=args.reboot or '',
			    cscript=args.cscript,
			    csrc=args.csrc,
			    aptcache=args.aptcache,
			    aptfailure=args.aptfailure,
			    datefmt=args.datefmt,
			    xmb=int(args.xmb),
			    noextend=args.noextend,
			    redo=args.redo,
			    batch=args.batch,
			    nspawnsw=args.nspawnsw,
			    ddsw=args.ddsw,
			)
		except pydantic.ValidationError as e:
			raise ValidationError(str(e))
		# Stored settings are one per line; a line break would smuggle in another setting.
		broken = [name for name, value in self.params.to_store().items() if '\n' in value or '\r' in value]
		if broken:
			raise ValidationError(f'Line breaks are not allowed in: {", ".join(broken)}')
		self.audit = AuditLog(datefmt=self.params.datefmt)

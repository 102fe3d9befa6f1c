import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional

CPARAMS_PATH = 'etc/sdm/cparams'
OVERLAY_PATH = 'etc/sdm/auto-1piboot.conf'

_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
_LINE = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*):(.*)$')
_ESCAPE = re.compile(r'\\([\\#])')
_QUOTES = ('"', "'")


def encode_value(value: str) -> str:
	encoded = value.replace('\\', '\\\\').replace('#', '\\#')
	looks_quoted = len(encoded) >= 2 and encoded[0] == encoded[-1] and encoded[0] in _QUOTES
	if looks_quoted or encoded != encoded.strip():
		encoded = '"' + encoded + '"'
	return encoded


def decode_value(raw: str) -> str:
	# Cut at the first unescaped '#', leaving escape pairs intact for now.
	kept: List[str] = []
	i = 0
	while i < len(raw):
		ch = raw[i]
		if ch == '\\' and i + 1 < len(raw) and raw[i + 1] in '\\#':
			kept.append(raw[i:i + 2])
			i += 2
			continue
		if ch == '#':
			break
		kept.append(ch)
		i += 1
	value = ''.join(kept).strip()
	if len(value) >= 2 and value[0] == value[-1] and value[0] in _QUOTES:
		value = value[1:-1]
	return _ESCAPE.sub(r'\1', value)


class ConfigStore(object):
	def __init__(self, root: Path, relpath: str = CPARAMS_PATH):
		self.root = root
		self.path = root / relpath

	def exists(self) -> bool:
		return self.path.exists()

	def write(self, params: Mapping[str, str]) -> None:
		lines: List[str] = []
		for name, value in params.items():
			if not _NAME.match(name):
				raise ValueError(f'Invalid parameter name: {name!r}')
			if '\n' in value or '\r' in value:
				raise ValueError(f'Parameter {name!r} contains a line break')
			lines.append(f'{name}:{encode_value(value)}\n')
		self.path.parent.mkdir(parents=True, exist_ok=True)
		with open(self.path, 'w', encoding='utf8') as fd:
			fd.write(''.join(lines))

	def read(self) -> Dict[str, str]:
		params: Dict[str, str] = {}
		with open(self.path, 'r', encoding='utf8', errors='surrogateescape') as fd:
			for line in fd:
				line = line.strip()
				if not line or line.startswith('#'):
					continue
				match = _LINE.match(line)
				if match is None:
					continue
				params[match.group(1)] = decode_value(match.group(2))
		return params


class SettingsFile(object):
	def __init__(self, path: Path):
		self.path = path

	def lines(self) -> List[str]:
		if not self.path.exists():
			return []
		with open(self.path, 'r', encoding='utf8', errors='surrogateescape') as fd:
			return fd.read().splitlines()

	def get(self, key: str) -> Optional[str]:
		value: Optional[str] = None
		for line in self.lines():
			k, sep, v = line.partition('=')
			if sep and k.strip() == key:
				value = v.strip()
		return value

	def set(self, key: str, value: str) -> None:
		self.update({key: value})

	def update(self, settings: Mapping[str, str]) -> None:
		if not settings:
			return
		lines = [line for line in self.lines() if line.partition('=')[0].strip() not in settings]
		for key, value in settings.items():
			lines.append(f'{key}={value}')
		self.path.parent.mkdir(parents=True, exist_ok=True)
		with open(self.path, 'w', encoding='utf8', errors='surrogateescape') as fd:
			fd.write('\n'.join(lines) + '\n')

from typing import AbstractSet, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .lib import ValidationError

MODES: Tuple[str, ...] = ('customize', 'burn', 'burnfile', 'mount', 'explore', 'extend')


class UnrecognizedOptions(ValidationError):
	def __init__(self, option: str, unrecognized: Iterable[str]):
		self.option = option
		self.unrecognized = tuple(unrecognized)
		super().__init__(f'Unrecognized {option} value(s): {", ".join(self.unrecognized)}')


def split_list(raw: Optional[str]) -> List[str]:
	if not raw:
		return []
	return [token.strip() for token in raw.split(',') if token.strip()]


def validate_list(raw_csv: Optional[str], allowed: AbstractSet[str], option: str = 'option') -> FrozenSet[str]:
	tokens = split_list(raw_csv)
	unrecognized = [token for token in tokens if token not in allowed]
	if unrecognized:
		raise UnrecognizedOptions(option, unrecognized)
	return frozenset(tokens)


def validate_keyvalue_list(raw: Optional[str], allowed_keys: Optional[AbstractSet[str]],
                           option: str = 'option') -> Dict[str, str]:
	settings: Dict[str, str] = {}
	unrecognized: List[str] = []
	malformed: List[str] = []
	for item in split_list(raw):
		key, sep, value = item.partition(':')
		key, value = key.strip(), value.strip()
		if not sep or not key or not value:
			malformed.append(item)
		elif allowed_keys is not None and key not in allowed_keys:
			unrecognized.append(key)
		else:
			settings[key] = value
	if malformed:
		raise ValidationError(f'Malformed {option} value(s), expected key:value: {", ".join(malformed)}')
	if unrecognized:
		raise UnrecognizedOptions(option, unrecognized)
	return settings


def check_conflicts(modes: Mapping[str, bool], restart: bool = False, norestart: bool = False) -> str:
	requested = [mode for mode in MODES if modes.get(mode)]
	problems: List[str] = []
	for i, first in enumerate(requested):
		for second in requested[i + 1:]:
			problems.append(f'--{first} and --{second}')
	if restart and norestart:
		problems.append('--restart and --norestart')
	if problems:
		raise ValidationError('Conflicting switches: ' + '; '.join(problems))
	if not requested:
		return 'customize'
	return requested[0]


def check_numeric(**options: Optional[str]) -> None:
	bad: List[str] = []
	for name, value in options.items():
		if value is not None and not (value.isascii() and value.isdigit()):
			bad.append(f'--{name}={value!r}')
	if bad:
		raise ValidationError('Value must be numeric: ' + ', '.join(bad))


def check_paired(a_name: str, a: Optional[str], b_name: str, b: Optional[str]) -> None:
	if (a is None) != (b is None):
		raise ValidationError(f'--{a_name} and --{b_name} must be specified together')

import sys
import textwrap
import time
from pathlib import Path
from typing import NoReturn, Optional, Sequence


def fail(message: str, exitstatus: int = 1) -> NoReturn:
	print('\n' + message + '\n', file=sys.stderr)
	raise SystemExit(exitstatus)


class PipelineError(Exception):
	pass


class ValidationError(PipelineError):
	pass


class NotFoundError(PipelineError):
	pass


class ResourceError(PipelineError):
	pass


class DeviceBusy(ResourceError):
	pass


class AttachFailed(ResourceError):
	pass


class MountFailed(ResourceError):
	pass


class NotFileBacked(ResourceError):
	pass


class PartitionToolError(ResourceError):
	pass


class CollaboratorError(PipelineError):
	def __init__(self, command: Sequence[str], returncode: int, what: str = 'Command'):
		self.command = list(command)
		self.returncode = returncode
		super().__init__(f'{what} exited with non-zero exit status {returncode}: {" ".join(self.command)}')


class AuditLog(object):
	DEFAULT_DATEFMT = '%Y-%m-%d %H:%M:%S'
	WRAP_COLUMN = 96

	def __init__(self, datefmt: str = DEFAULT_DATEFMT, echo: bool = True):
		self.datefmt = datefmt
		self.echo = echo
		self.path: Optional[Path] = None

	def attach(self, path: Path) -> None:
		path.parent.mkdir(parents=True, exist_ok=True)
		self.path = path

	def detach(self) -> None:
		self.path = None

	def format(self, message: str, when: Optional[float] = None) -> str:
		stamp = time.strftime(self.datefmt, time.localtime(when))
		# Continuation lines line up under the first character of the message.
		return textwrap.fill(
		    message,
		    width=self.WRAP_COLUMN,
		    initial_indent=stamp + ' ',
		    subsequent_indent=' ' * (len(stamp) + 1),
		    break_long_words=False,
		    break_on_hyphens=False,
		)

	def log(self, message: str) -> None:
		if self.echo:
			print(message)
		if self.path is not None:
			with open(self.path, 'a', encoding='utf8') as fd:
				fd.write(self.format(message) + '\n')

import shlex
import subprocess
from pathlib import Path
from typing import IO, List, Mapping, Optional, Sequence

from .lib import CollaboratorError, PartitionToolError

DEFAULT_DDSW = 'bs=16M iflag=fullblock oflag=direct status=progress'


class PartitionTool(object):
	def _run(self, argv: List[str]) -> str:
		try:
			proc = subprocess.run(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
		except OSError as e:
			raise PartitionToolError(f'Unable to run {argv[0]}: {e!s}')
		if proc.returncode != 0:
			raise PartitionToolError(
			    f'{" ".join(argv)} exited with non-zero exit status {proc.returncode}: {proc.stderr.strip()}'
			)
		return proc.stdout

	def print_table(self, image: Path) -> List[List[str]]:
		output = self._run(['parted', '-ms', str(image), 'unit', 'B', 'print'])
		# Machine readable output: "BYT;", then the disk line, then one line per partition.
		rows = [line.rstrip(';').split(':') for line in output.splitlines() if line.strip()]
		if len(rows) < 2 or rows[0] != ['BYT']:
			raise PartitionToolError(f'Unexpected parted output for {str(image)!r}: {output!r}')
		return rows[1:]

	@staticmethod
	def _bytes(field: str, image: Path) -> int:
		if not field.endswith('B') or not field[:-1].isdigit():
			raise PartitionToolError(f'Unexpected size {field!r} in parted output for {str(image)!r}')
		return int(field[:-1])

	def disk_size(self, image: Path) -> int:
		disk = self.print_table(image)[0]
		if len(disk) < 2:
			raise PartitionToolError(f'Unexpected disk line in parted output for {str(image)!r}')
		return self._bytes(disk[1], image)

	def partition_end(self, image: Path, number: int) -> int:
		for row in self.print_table(image)[1:]:
			if row[0] == str(number) and len(row) >= 3:
				return self._bytes(row[2], image)
		raise PartitionToolError(f'Partition {number} not found in {str(image)!r}')

	def resize_partition(self, image: Path, number: int, end: int) -> None:
		self._run(['parted', '-s', str(image), 'unit', 'B', 'resizepart', str(number), f'{end}B'])

	def grow_filesystem(self, partition: str) -> None:
		# e2fsck: 0 is clean, 1 means errors were corrected.
		proc = subprocess.run(['e2fsck', '-f', '-y', partition], stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
		if proc.returncode not in (0, 1):
			raise PartitionToolError(f'e2fsck of {partition} exited with non-zero exit status {proc.returncode}')
		self._run(['resize2fs', partition])

	def reread(self, device: Path) -> None:
		self._run(['partprobe', str(device)])


class ContainerSpawner(object):
	def __init__(self, switches: str = ''):
		self.switches = shlex.split(switches)

	def command(self, root: Path, argv: Sequence[str], env: Optional[Mapping[str, str]] = None) -> List[str]:
		cmd = ['systemd-nspawn', '-q', f'--directory={root!s}'] + self.switches
		for key, value in (env or {}).items():
			cmd.append(f'--setenv={key}={value}')
		return cmd + list(argv)

	def run(self,
	        root: Path,
	        argv: Sequence[str],
	        env: Optional[Mapping[str, str]] = None,
	        output: Optional[IO[str]] = None) -> int:
		cmd = self.command(root, argv, env)
		try:
			if output is None:
				proc = subprocess.run(cmd)
			else:
				proc = subprocess.run(cmd, stdout=output, stderr=subprocess.STDOUT)
		except OSError as e:
			raise CollaboratorError(cmd, 127, f'Container spawn ({e!s})')
		return proc.returncode

	def check(self, root: Path, argv: Sequence[str], env: Optional[Mapping[str, str]] = None) -> None:
		returncode = self.run(root, argv, env)
		if returncode != 0:
			raise CollaboratorError(list(argv), returncode, 'Command in target')

	def shell(self, root: Path) -> int:
		return self.run(root, ['/bin/bash'])


class PackageManager(object):
	def __init__(self, spawner: ContainerSpawner, root: Path, logfile: Path):
		self.spawner = spawner
		self.root = root
		self.logfile = logfile

	def run(self, subcommand: str) -> int:
		argv = ['apt-get', '-y', '-q'] + shlex.split(subcommand)
		self.logfile.parent.mkdir(parents=True, exist_ok=True)
		with open(self.logfile, 'a', encoding='utf8') as log:
			log.write(f'*** apt-get {subcommand}\n')
			log.flush()
			return self.spawner.run(self.root, argv, env={'DEBIAN_FRONTEND': 'noninteractive'}, output=log)


class BlockCopier(object):
	def __init__(self, switches: str = ''):
		self.switches = shlex.split(switches or DEFAULT_DDSW)

	def copy(self, source: Path, destination: Path) -> None:
		cmd = ['dd', f'if={source!s}', f'of={destination!s}'] + self.switches
		try:
			proc = subprocess.run(cmd)
		except OSError as e:
			raise CollaboratorError(cmd, 127, f'Block copy ({e!s})')
		if proc.returncode != 0:
			raise CollaboratorError(cmd, proc.returncode, 'Block copy')

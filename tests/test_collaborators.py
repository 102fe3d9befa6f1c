"""Tests for collaborators.py - parted, systemd-nspawn, apt-get and dd wrappers."""

import subprocess
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from pi_image_customizer.collaborators import (DEFAULT_DDSW, BlockCopier, ContainerSpawner, PackageManager,
                                               PartitionTool)
from pi_image_customizer.lib import CollaboratorError, PartitionToolError

PARTED_OUTPUT = """BYT;
/tmp/raspios.img:3221225472B:file:512:512:msdos::;
1:4194304B:272629759B:268435456B:fat32::lba;
2:272629760B:3221225471B:2948595712B:ext4::;
"""


class TestPartitionTool:
	@patch('subprocess.run')
	def test_disk_size(self, mock_run):
		mock_run.return_value = Mock(returncode=0, stdout=PARTED_OUTPUT, stderr='')

		assert PartitionTool().disk_size(Path('/tmp/raspios.img')) == 3221225472
		mock_run.assert_called_once_with(['parted', '-ms', '/tmp/raspios.img', 'unit', 'B', 'print'],
		                                 stdout=subprocess.PIPE,
		                                 stderr=subprocess.PIPE,
		                                 text=True)

	@patch('subprocess.run')
	def test_partition_end(self, mock_run):
		mock_run.return_value = Mock(returncode=0, stdout=PARTED_OUTPUT, stderr='')

		assert PartitionTool().partition_end(Path('/tmp/raspios.img'), 2) == 3221225471

	@patch('subprocess.run')
	def test_missing_partition(self, mock_run):
		mock_run.return_value = Mock(returncode=0, stdout=PARTED_OUTPUT, stderr='')

		with pytest.raises(PartitionToolError, match='Partition 3'):
			PartitionTool().partition_end(Path('/tmp/raspios.img'), 3)

	@patch('subprocess.run')
	def test_unexpected_output(self, mock_run):
		mock_run.return_value = Mock(returncode=0, stdout='Error: something odd\n', stderr='')

		with pytest.raises(PartitionToolError, match='Unexpected parted output'):
			PartitionTool().disk_size(Path('/tmp/raspios.img'))

	@patch('subprocess.run')
	def test_unexpected_size_field(self, mock_run):
		mock_run.return_value = Mock(returncode=0, stdout='BYT;\n/tmp/raspios.img:3.2GB:file;\n', stderr='')

		with pytest.raises(PartitionToolError, match='Unexpected size'):
			PartitionTool().disk_size(Path('/tmp/raspios.img'))

	@patch('subprocess.run')
	def test_tool_failure(self, mock_run):
		mock_run.return_value = Mock(returncode=1, stdout='', stderr='unrecognised disk label')

		with pytest.raises(PartitionToolError, match='unrecognised disk label'):
			PartitionTool().resize_partition(Path('/tmp/raspios.img'), 2, 3221225471)

	@patch('subprocess.run', side_effect=FileNotFoundError('parted'))
	def test_tool_missing(self, mock_run):
		with pytest.raises(PartitionToolError, match='Unable to run parted'):
			PartitionTool().disk_size(Path('/tmp/raspios.img'))

	@patch('subprocess.run')
	def test_resize_command(self, mock_run):
		mock_run.return_value = Mock(returncode=0, stdout='', stderr='')

		PartitionTool().resize_partition(Path('/tmp/raspios.img'), 2, 3221225471)

		assert mock_run.call_args[0][0] == [
		    'parted', '-s', '/tmp/raspios.img', 'unit', 'B', 'resizepart', '2', '3221225471B'
		]

	@patch('subprocess.run')
	def test_grow_filesystem_accepts_corrected_errors(self, mock_run):
		mock_run.return_value = Mock(returncode=1, stdout='', stderr='')
		mock_run.side_effect = [Mock(returncode=1), Mock(returncode=0, stdout='', stderr='')]

		PartitionTool().grow_filesystem('/dev/loop3p2')

		assert [c[0][0][0] for c in mock_run.call_args_list] == ['e2fsck', 'resize2fs']

	@patch('subprocess.run', return_value=Mock(returncode=8))
	def test_grow_filesystem_fsck_failure(self, mock_run):
		with pytest.raises(PartitionToolError, match='e2fsck'):
			PartitionTool().grow_filesystem('/dev/loop3p2')

		assert mock_run.call_count == 1


class TestContainerSpawner:
	def test_command(self):
		spawner = ContainerSpawner('--bind=/srv --capability=all')

		assert spawner.command(Path('/mnt/sdm'), ['apt-get', 'update'], env={'A': '1'}) == [
		    'systemd-nspawn', '-q', '--directory=/mnt/sdm', '--bind=/srv', '--capability=all', '--setenv=A=1',
		    'apt-get', 'update'
		]

	@patch('subprocess.run', return_value=Mock(returncode=3))
	def test_run_returns_status(self, mock_run):
		assert ContainerSpawner().run(Path('/mnt/sdm'), ['false']) == 3

	@patch('subprocess.run', return_value=Mock(returncode=3))
	def test_check_raises(self, mock_run):
		with pytest.raises(CollaboratorError) as excinfo:
			ContainerSpawner().check(Path('/mnt/sdm'), ['useradd', 'bob'])

		assert excinfo.value.returncode == 3
		assert excinfo.value.command == ['useradd', 'bob']

	@patch('subprocess.run', side_effect=FileNotFoundError('systemd-nspawn'))
	def test_missing_tool(self, mock_run):
		with pytest.raises(CollaboratorError):
			ContainerSpawner().run(Path('/mnt/sdm'), ['true'])


class TestPackageManager:
	def test_logs_and_runs_in_container(self, tmp_path):
		spawner = Mock()
		spawner.run.return_value = 100
		logfile = tmp_path / 'etc/sdm/apt.log'

		returncode = PackageManager(spawner, tmp_path, logfile).run('install --no-install-recommends vim')

		assert returncode == 100
		args, kwargs = spawner.run.call_args
		assert args == (tmp_path, ['apt-get', '-y', '-q', 'install', '--no-install-recommends', 'vim'])
		assert kwargs['env'] == {'DEBIAN_FRONTEND': 'noninteractive'}
		assert logfile.read_text() == '*** apt-get install --no-install-recommends vim\n'


class TestBlockCopier:
	@patch('subprocess.run', return_value=Mock(returncode=0))
	def test_default_switches(self, mock_run):
		BlockCopier().copy(Path('raspios.img'), Path('/dev/sdz'))

		assert mock_run.call_args[0][0] == ['dd', 'if=raspios.img', 'of=/dev/sdz'] + DEFAULT_DDSW.split()

	@patch('subprocess.run', return_value=Mock(returncode=0))
	def test_custom_switches(self, mock_run):
		BlockCopier('bs=4M').copy(Path('raspios.img'), Path('out.img'))

		assert mock_run.call_args[0][0] == ['dd', 'if=raspios.img', 'of=out.img', 'bs=4M']

	@patch('subprocess.run', return_value=Mock(returncode=1))
	def test_failure(self, mock_run):
		with pytest.raises(CollaboratorError, match='Block copy'):
			BlockCopier().copy(Path('raspios.img'), Path('/dev/sdz'))

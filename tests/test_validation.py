"""Tests for validation.py - option lists, mode conflicts and numeric checks."""

import itertools

import pytest

from pi_image_customizer.lib import ValidationError
from pi_image_customizer.validation import (UnrecognizedOptions, check_conflicts, check_numeric, check_paired,
                                            split_list, validate_keyvalue_list, validate_list)


class TestValidateList:
	def test_reports_single_unrecognized_token(self):
		with pytest.raises(UnrecognizedOptions) as excinfo:
			validate_list('apps,bogus', {'apps', 'xapps'})

		assert excinfo.value.unrecognized == ('bogus',)
		assert 'bogus' in str(excinfo.value)

	def test_reports_every_unrecognized_token(self):
		with pytest.raises(UnrecognizedOptions) as excinfo:
			validate_list('nope,apps, bad ,xapps', {'apps', 'xapps'}, '--poptions')

		assert excinfo.value.unrecognized == ('nope', 'bad')
		assert '--poptions' in str(excinfo.value)

	def test_returns_trimmed_set(self):
		assert validate_list(' apps , xapps,,', {'apps', 'xapps'}) == frozenset({'apps', 'xapps'})

	def test_empty_input(self):
		assert validate_list('', {'apps'}) == frozenset()
		assert validate_list(None, {'apps'}) == frozenset()

	def test_split_list(self):
		assert split_list('a, b,,c ') == ['a', 'b', 'c']


class TestValidateKeyValueList:
	def test_parses_pairs(self):
		assert validate_keyvalue_list('camera:0, spi:1', {'camera', 'spi'}) == {'camera': '0', 'spi': '1'}

	def test_any_key_when_unrestricted(self):
		assert validate_keyvalue_list('dtoverlay:vc4-kms-v3d', None) == {'dtoverlay': 'vc4-kms-v3d'}

	def test_unknown_keys_reported_together(self):
		with pytest.raises(UnrecognizedOptions) as excinfo:
			validate_keyvalue_list('camera:0,foo:1,bar:2', {'camera'}, '--bootset')

		assert excinfo.value.unrecognized == ('foo', 'bar')

	def test_malformed_items(self):
		with pytest.raises(ValidationError, match='camera'):
			validate_keyvalue_list('camera,spi:1', {'camera', 'spi'})


class TestCheckConflicts:
	@pytest.mark.parametrize('first,second', list(itertools.permutations(['burn', 'mount', 'explore', 'customize'], 2)))
	def test_rejects_every_pair(self, first, second):
		with pytest.raises(ValidationError, match='Conflicting'):
			check_conflicts({first: True, second: True})

	@pytest.mark.parametrize('other', ['burn', 'burnfile', 'mount', 'explore', 'customize'])
	def test_extend_conflicts_with_other_modes(self, other):
		with pytest.raises(ValidationError):
			check_conflicts({'extend': True, other: True})

	def test_burn_and_burnfile_conflict(self):
		with pytest.raises(ValidationError):
			check_conflicts({'burn': True, 'burnfile': True})

	def test_restart_and_norestart_conflict(self):
		with pytest.raises(ValidationError, match='--restart and --norestart'):
			check_conflicts({}, restart=True, norestart=True)

	def test_customize_is_default(self):
		assert check_conflicts({}) == 'customize'
		assert check_conflicts({'mount': False, 'burn': False}) == 'customize'

	def test_single_mode_returned(self):
		assert check_conflicts({'explore': True}) == 'explore'
		assert check_conflicts({'burnfile': True}, restart=True) == 'burnfile'


class TestNumericChecks:
	def test_digits_accepted(self):
		check_numeric(xmb='1024', uid='1001', hdmigroup=None)

	def test_all_offenders_reported(self):
		with pytest.raises(ValidationError) as excinfo:
			check_numeric(xmb='1G', uid='10', reboot='-5')

		assert '--xmb' in str(excinfo.value)
		assert '--reboot' in str(excinfo.value)
		assert '--uid' not in str(excinfo.value)

	def test_non_ascii_digits_rejected(self):
		with pytest.raises(ValidationError):
			check_numeric(hdmimode='١٢')

	def test_paired_options(self):
		check_paired('hdmigroup', '1', 'hdmimode', '16')
		check_paired('hdmigroup', None, 'hdmimode', None)
		with pytest.raises(ValidationError, match='together'):
			check_paired('hdmigroup', '1', 'hdmimode', None)

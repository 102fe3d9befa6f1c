import bz2
import hashlib
import io
import lzma
from typing import IO, NoReturn, Optional, Union

import tqdm

Decompressor = Union[bz2.BZ2Decompressor, lzma.LZMADecompressor]


def decompressor_for(name: str) -> Optional[Decompressor]:
	if name.endswith('.xz'):
		return lzma.LZMADecompressor()
	if name.endswith('.bz2'):
		return bz2.BZ2Decompressor()
	return None


class WriteProxy(IO[bytes], io.RawIOBase):
	"""A write-only stage of a download pipeline, passing data on to `target`."""
	target: IO[bytes]

	def __init__(self, target: IO[bytes]):
		self.target = target

	def writable(self) -> bool:
		return True

	def readable(self) -> bool:
		return False

	def read(self, *args, **kwargs) -> NoReturn:
		raise io.UnsupportedOperation(f'{type(self).__name__} is write-only')

	def flush(self) -> None:
		self.target.flush()

	def close(self) -> None:
		self.target.close()

	def __enter__(self):
		return super().__enter__()

	def __exit__(self, exc_type, exc_value, traceback) -> None:
		# io.RawIOBase.__exit__ does not reach our target, so close the chain here.
		super().__exit__(exc_type, exc_value, traceback)
		self.close()


class IncrementalDecompressor(WriteProxy):
	def __init__(self, target: IO[bytes], decompressor: Decompressor, block_size: int = 64 * 1024):
		super().__init__(target)
		self.block_size = block_size
		self.decompressor = decompressor
		self.decompressed_bytes = 0

	def write(self, data: bytes) -> int:
		if self.decompressor.eof:
			raise ValueError('Additional data supplied beyond the end of the compressed stream.')
		consumed = len(data)
		# Output is produced at most block_size at a time; keep draining until more input is needed.
		chunk = self.decompressor.decompress(data, max_length=self.block_size)
		while True:
			self.target.write(chunk)
			self.decompressed_bytes += len(chunk)
			if self.decompressor.needs_input or self.decompressor.eof:
				return consumed
			chunk = self.decompressor.decompress(b'', max_length=self.block_size)


class IncrementalHasher(WriteProxy):
	def __init__(self, algorithm: str, target: IO[bytes]):
		super().__init__(target)
		self.hash = hashlib.new(algorithm)

	def hexdigest(self) -> str:
		return self.hash.hexdigest()

	def write(self, data: bytes) -> int:
		self.hash.update(data)
		return self.target.write(data)


class IncrementalTQDMProxy(WriteProxy):
	def __init__(self, target: IO[bytes], progress: tqdm.tqdm):
		super().__init__(target)
		self.progress = progress

	def write(self, data: bytes) -> int:
		self.progress.update(len(data))
		return self.target.write(data)

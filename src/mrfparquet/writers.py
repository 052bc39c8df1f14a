from __future__ import annotations

import logging
import os
import queue
import threading

import pyarrow as pa
import pyarrow.parquet as pq

from mrfparquet.exceptions import WriterError
from mrfparquet.helpers import get_filesystem, is_filesystem_uri, join_uri, make_dir
from mrfparquet.schema import ENUM_COLUMNS, SCHEMA, Record, Row, rows_from_records

log = logging.getLogger(__name__)

MAX_ROWS_PER_FILE = 100_000_000
MAX_ROWS_PER_GROUP = 1_000_000
FLUSH_ROWS = 50_000
QUEUE_SIZE = 4 * 1024
FILENAME_TEMPLATE = '_%04d.zstd.parquet'
COMPRESSION = 'zstd'

# How often blocked puts/gets look up from the queue to check on the
# other side
POLL_SECONDS = 0.5

# Put on the queue after the last batch
_DONE = object()


class RecordFileWriter:
	"""One open parquet file. Rows are buffered until `flush`."""

	def __init__(
		self,
		path: str,
		max_rows_per_group: int = MAX_ROWS_PER_GROUP,
		compression: str = COMPRESSION,
	):
		self.path = path
		self.max_rows_per_group = max_rows_per_group
		self.rows = 0
		self._buffer: list[Row] = []

		try:
			if is_filesystem_uri(path):
				filesystem, where = get_filesystem(path)
			else:
				filesystem, where = None, path

			self._writer = pq.ParquetWriter(
				where,
				SCHEMA,
				filesystem=filesystem,
				compression=compression,
				use_dictionary=ENUM_COLUMNS,
			)
		except (OSError, pa.ArrowException) as e:
			raise WriterError(f'Unable to open {path}: {e}') from e

		log.debug(f'Opened writer for {path}')

	def write(self, records: list[Record]) -> int:

		self._buffer.extend(rows_from_records(records))
		self.rows += len(records)
		return len(records)

	def flush(self) -> None:

		if not self._buffer:
			return

		rows, self._buffer = self._buffer, []
		try:
			table = pa.Table.from_pylist(rows, schema=SCHEMA)
			self._writer.write_table(table, row_group_size=self.max_rows_per_group)
		except (OSError, pa.ArrowException) as e:
			raise WriterError(f'Unable to write to {self.path}: {e}') from e

	def close(self) -> None:

		self.flush()
		try:
			self._writer.close()
		except (OSError, pa.ArrowException) as e:
			raise WriterError(f'Unable to close {self.path}: {e}') from e

		log.debug(f'Closed writer for {self.path} ({self.rows} rows)')


class ParquetWriterFactory:
	"""
	Hands out RecordFileWriters with an increasing, zero-padded index:
	out/mrf_0000.zstd.parquet, out/mrf_0001.zstd.parquet, ...

	`output_dir` is a local path or a file://, s3:// or gs:// URI.
	"""

	def __init__(
		self,
		file_prefix: str,
		output_dir: str,
		max_rows_per_file: int = MAX_ROWS_PER_FILE,
		max_rows_per_group: int = MAX_ROWS_PER_GROUP,
		filename_template: str = FILENAME_TEMPLATE,
		compression: str = COMPRESSION,
	):
		if max_rows_per_file < 1:
			raise ValueError(f'max_rows_per_file must be at least 1: {max_rows_per_file}')

		self.output_dir = str(output_dir)
		if is_filesystem_uri(self.output_dir):
			self.filename_template = join_uri(self.output_dir, file_prefix) + filename_template
		else:
			self.filename_template = os.path.join(self.output_dir, file_prefix) + filename_template
		self.file_index = 0
		self.max_rows_per_file = max_rows_per_file
		self.max_rows_per_group = max_rows_per_group
		self.compression = compression

	def create_writer(self) -> RecordFileWriter:

		try:
			make_dir(self.output_dir)
		except (OSError, pa.ArrowException) as e:
			raise WriterError(f'Unable to create {self.output_dir}: {e}') from e

		path = self.filename_template % self.file_index
		self.file_index += 1

		return RecordFileWriter(path, self.max_rows_per_group, self.compression)


class RecordSink:
	"""
	The only thing that writes output. Extraction tasks hand their record
	batches to `write`, which puts them on a bounded queue; one thread
	takes them off and writes them, starting a new file every
	`max_rows_per_file` rows.

	`finalize` lets the thread write everything still queued, closes the
	last file and re-raises anything that went wrong on the way. A write
	error also surfaces on the next `write` call.
	"""

	def __init__(
		self,
		factory: ParquetWriterFactory,
		queue_size: int = QUEUE_SIZE,
		flush_rows: int = FLUSH_ROWS,
	):
		self.factory = factory
		self.flush_rows = flush_rows
		self.error: BaseException | None = None
		self.files: list[str] = []
		self.rows_written = 0

		self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
		self._writer: RecordFileWriter | None = None
		self._unflushed = 0
		self._closing = False
		self._aborted = False
		self._thread = threading.Thread(target=self._run, name='mrfparquet-writer', daemon=True)

	def start(self) -> RecordSink:

		self._thread.start()
		return self

	def write(self, records: list[Record]) -> None:

		if not records:
			return
		if self._closing:
			raise RuntimeError('Record sink is finalized')

		self._put(records)

	def finalize(self) -> list[str]:
		"""Returns the paths of the files written"""
		self._closing = True
		self._put(_DONE)
		self._thread.join()

		if self.error is not None:
			raise self.error

		log.info(f'Wrote {self.rows_written} rows to {len(self.files)} files')
		return self.files

	def abort(self) -> None:
		"""Stops the writer thread without writing what's left in the queue"""
		self._closing = True
		self._aborted = True
		if self._thread.is_alive():
			self._thread.join()

	def _put(self, item) -> None:

		while True:
			# The writer thread sets the error before it exits
			alive = self._thread.is_alive()
			if self.error is not None:
				raise self.error
			if not alive:
				raise RuntimeError('Record sink is not running')
			try:
				self._queue.put(item, timeout=POLL_SECONDS)
				return
			except queue.Full:
				continue

	def _get(self):

		while not self._aborted:
			try:
				return self._queue.get(timeout=POLL_SECONDS)
			except queue.Empty:
				continue
		return _DONE

	def _run(self) -> None:

		try:
			while True:
				batch = self._get()
				if batch is _DONE or self._aborted:
					break
				self._write_batch(batch)

			if self._writer is not None:
				self._writer.close()
		except Exception as e:
			log.error(f'Record sink failed: {e}')
			self.error = e
			if self._writer is not None:
				try:
					self._writer.close()
				except WriterError as close_error:
					log.error(f'Unable to close {self._writer.path}: {close_error}')

	def _rotate(self) -> None:

		if self._writer is not None:
			self._writer.close()

		self._writer = self.factory.create_writer()
		self._unflushed = 0
		self.files.append(self._writer.path)

	def _write_batch(self, records: list[Record]) -> None:
		"""
		Splits the batch where it crosses a multiple of max_rows_per_file,
		so every file but the last holds exactly max_rows_per_file rows.
		"""
		max_rows = self.factory.max_rows_per_file

		while records:
			if self._writer is None or self._writer.rows >= max_rows:
				self._rotate()

			room = max_rows - self._writer.rows
			chunk, records = records[:room], records[room:]

			written = self._writer.write(chunk)
			self.rows_written += written
			self._unflushed += written

			# Less memory and faster runs than holding everything
			# until the file is closed
			if self._unflushed >= self.flush_rows:
				log.debug(f'Wrote {self.rows_written} rows.')
				self._writer.flush()
				self._unflushed = 0

"""
Turns a directory of shards into parquet files.

>>> parse('shards/', 'out/', 'services.csv', plan_id=42)

The shard directory holds what `split_file` writes: one `root.json`, one or
more `in_network_*.jsonl` and one or more `provider_references_*.jsonl`
files with one JSON object per line.

The run has two phases with a barrier between them. Every in-network
shard is read first; that's how we find out which provider groups the
matching rates refer to. Only once all of those tasks are done do the
provider reference shards get read, keeping just the groups that were
referred to.

Shards are read in batches of lines. Each batch is one task on the pool,
and each task hands its records to the sink in one go.
"""
from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Generator

import ijson
from tqdm import tqdm

from mrfparquet.exceptions import InvalidMRF, LineTooLongError
from mrfparquet.filters import Counter, ProviderReferenceFilter, ServiceAllowList
from mrfparquet.flatteners import (
	UNSET_PLAN_ID,
	in_network_records,
	provider_reference_records,
	root_record,
)
from mrfparquet.helpers import MRFOpen, list_shards
from mrfparquet.pool import MAX_CAPACITY, MAX_WORKERS, TaskGroup, TaskPool
from mrfparquet.writers import (
	COMPRESSION,
	FILENAME_TEMPLATE,
	FLUSH_ROWS,
	MAX_ROWS_PER_FILE,
	MAX_ROWS_PER_GROUP,
	QUEUE_SIZE,
	ParquetWriterFactory,
	RecordSink,
)

log = logging.getLogger(__name__)

ROOT_NAME = 'root.json'
IN_NETWORK_PREFIX = 'in_network_'
PROVIDER_REFERENCES_PREFIX = 'provider_references_'

# Bytes. Anything longer is a broken file, or one we can't hold in memory
MAX_LINE_LENGTH = 5_000_000

# In-network objects are much bigger than provider references
IN_NETWORK_LINES = 100
PROVIDER_REFERENCE_LINES = 2_000

IN_NETWORK_LOG_EVERY = 5_000
PROVIDER_REFERENCE_LOG_EVERY = 100_000

FILE_PREFIX = 'mrf'


@dataclass
class Shards:
	root: str
	in_network: list[str] = field(default_factory=list)
	provider_references: list[str] = field(default_factory=list)


@dataclass
class ParseStats:
	root_uuid: str = ''
	in_network_shards: int = 0
	provider_reference_shards: int = 0
	in_network_items: int = 0
	in_network_matched: int = 0
	provider_references: int = 0
	provider_references_matched: int = 0
	provider_filter_size: int = 0
	records_written: int = 0
	files: list[str] = field(default_factory=list)


def find_shards(in_dir) -> Shards:

	root = None
	in_network = []
	provider_references = []

	for shard in list_shards(in_dir):
		name = os.path.basename(shard)

		if ROOT_NAME in name:
			if root is not None:
				raise InvalidMRF(f'More than one root shard in {in_dir}: {root}, {shard}')
			root = shard
		elif name.startswith(IN_NETWORK_PREFIX):
			in_network.append(shard)
		elif name.startswith(PROVIDER_REFERENCES_PREFIX):
			provider_references.append(shard)
		else:
			log.warning(f'Ignoring shard with unknown name: {shard}')

	if root is None:
		raise InvalidMRF(f'No {ROOT_NAME} shard in {in_dir}')

	log.info(
		f'Found {len(in_network)} in-network and '
		f'{len(provider_references)} provider reference shards in {in_dir}'
	)
	return Shards(root, in_network, provider_references)


def gen_batches(
	f,
	lines_per_batch: int,
	max_line_length: int = MAX_LINE_LENGTH,
) -> Generator[bytes, None, None]:
	"""
	Reads `f` a line at a time and yields `lines_per_batch` lines joined
	by newlines, plus whatever is left over at the end. Blank lines are
	dropped.
	"""
	if lines_per_batch < 1:
		raise ValueError(f'lines_per_batch must be at least 1: {lines_per_batch}')

	lines = []
	while True:
		# Room for the line plus a CRLF
		line = f.readline(max_line_length + 2)
		if not line:
			break

		if len(line.rstrip(b'\r\n')) > max_line_length:
			raise LineTooLongError(f'Line longer than {max_line_length} bytes')

		line = line.strip()
		if not line:
			continue

		lines.append(line)
		if len(lines) >= lines_per_batch:
			yield b'\n'.join(lines)
			lines = []

	if lines:
		yield b'\n'.join(lines)


def gen_objects(buffer: bytes) -> Generator[dict, None, None]:
	"""Every JSON value in a newline-delimited batch"""
	try:
		yield from ijson.items(io.BytesIO(buffer), '', multiple_values=True, use_float=True)
	except ijson.JSONError as e:
		raise InvalidMRF(f'Invalid JSON: {e}') from e


def read_root(shard) -> dict:

	with MRFOpen(shard) as f:
		try:
			root = next(ijson.items(f, '', use_float=True), None)
		except ijson.JSONError as e:
			raise InvalidMRF(f'Invalid JSON in {shard}: {e}') from e

	if root is None:
		raise InvalidMRF(f'Empty root shard: {shard}')
	return root


def write_root(shard, sink: RecordSink, plan_id: int = UNSET_PLAN_ID) -> str:
	"""Writes the root record and returns its uuid"""
	record = root_record(read_root(shard), plan_id)
	sink.write([record])

	log.info(f'Parsed root shard {shard}: plan {record.plan_id!r}')
	return record.uuid


class TwoPhaseParser:
	"""
	Runs the extraction tasks for both phases on one pool.

	`run` is the only public entrypoint; the provider reference phase
	never starts before every in-network task has finished, and the
	provider reference filter is frozen in between.
	"""

	def __init__(
		self,
		pool: TaskPool,
		sink: RecordSink,
		services: ServiceAllowList,
		root_uuid: str,
		max_line_length: int = MAX_LINE_LENGTH,
		in_network_lines: int = IN_NETWORK_LINES,
		provider_reference_lines: int = PROVIDER_REFERENCE_LINES,
		progress: bool = True,
	):
		self.pool = pool
		self.sink = sink
		self.services = services
		self.root_uuid = root_uuid
		self.max_line_length = max_line_length
		self.in_network_lines = in_network_lines
		self.provider_reference_lines = provider_reference_lines
		self.progress = progress

		self.providers = ProviderReferenceFilter()

		self.in_network_items = Counter()
		self.in_network_matched = Counter()
		self.provider_references = Counter()
		self.provider_references_matched = Counter()

	def parse_in_network_lines(self, buffer: bytes) -> None:

		records = []
		for item in gen_objects(buffer):
			self.in_network_items.add()

			item_records = in_network_records(item, self.root_uuid, self.services, self.providers)
			if item_records is None:
				continue

			self.in_network_matched.add()
			records.extend(item_records)

		self.sink.write(records)

	def parse_provider_reference_lines(self, buffer: bytes) -> None:

		records = []
		for reference in gen_objects(buffer):
			self.provider_references.add()

			reference_records = provider_reference_records(reference, self.root_uuid, self.providers)
			if reference_records is None:
				continue

			self.provider_references_matched.add()
			records.extend(reference_records)

		self.sink.write(records)

	def read_shard(
		self,
		group: TaskGroup,
		shard: str,
		task: Callable[[bytes], None],
		lines_per_batch: int,
		log_every: int,
	) -> int:

		log.info(f'Reading {shard}')

		lines = 0
		next_log = log_every
		with MRFOpen(shard) as f:
			for batch in gen_batches(f, lines_per_batch, self.max_line_length):
				group.submit(task, batch)

				lines += batch.count(b'\n') + 1
				if lines >= next_log:
					log.debug(f'{shard}: read {lines} lines')
					next_log += log_every

		log.info(f'Finished reading {shard}: {lines} lines')
		return lines

	def run_phase(
		self,
		name: str,
		shards: list[str],
		task: Callable[[bytes], None],
		lines_per_batch: int,
		log_every: int,
	) -> None:

		group = self.pool.group(name)

		for shard in tqdm(shards, desc=name, unit='shard', disable=not self.progress):
			self.read_shard(group, shard, task, lines_per_batch, log_every)

		group.wait()
		log.info(f'Phase {name} done: {group.submitted} batches')

	def run(self, in_network_shards: list[str], provider_reference_shards: list[str]) -> None:

		self.run_phase(
			'in_network',
			in_network_shards,
			self.parse_in_network_lines,
			self.in_network_lines,
			IN_NETWORK_LOG_EVERY,
		)

		# Nothing adds to the filter past this point
		self.providers.freeze()
		log.info(f'Looking for {len(self.providers)} referenced provider groups')

		self.run_phase(
			'provider_references',
			provider_reference_shards,
			self.parse_provider_reference_lines,
			self.provider_reference_lines,
			PROVIDER_REFERENCE_LOG_EVERY,
		)


def parse(
	input_dir,
	output_dir,
	services_file,
	plan_id: int = UNSET_PLAN_ID,
	max_workers: int = MAX_WORKERS,
	max_capacity: int = MAX_CAPACITY,
	max_line_length: int = MAX_LINE_LENGTH,
	in_network_lines: int = IN_NETWORK_LINES,
	provider_reference_lines: int = PROVIDER_REFERENCE_LINES,
	max_rows_per_file: int = MAX_ROWS_PER_FILE,
	max_rows_per_group: int = MAX_ROWS_PER_GROUP,
	flush_rows: int = FLUSH_ROWS,
	filename_template: str = FILENAME_TEMPLATE,
	compression: str = COMPRESSION,
	queue_size: int = QUEUE_SIZE,
	file_prefix: str = FILE_PREFIX,
	progress: bool = True,
) -> ParseStats:
	"""
	Parses the shards in `input_dir` into parquet files in `output_dir`.
	Raises on the first error of any kind; the output is incomplete then.
	"""
	services = ServiceAllowList.from_csv(services_file)
	shards = find_shards(input_dir)

	factory = ParquetWriterFactory(
		file_prefix,
		output_dir,
		max_rows_per_file=max_rows_per_file,
		max_rows_per_group=max_rows_per_group,
		filename_template=filename_template,
		compression=compression,
	)
	with TaskPool(max_workers, max_capacity) as pool:
		sink = RecordSink(factory, queue_size=queue_size, flush_rows=flush_rows).start()

		try:
			root_uuid = write_root(shards.root, sink, plan_id)

			parser = TwoPhaseParser(
				pool,
				sink,
				services,
				root_uuid,
				max_line_length=max_line_length,
				in_network_lines=in_network_lines,
				provider_reference_lines=provider_reference_lines,
				progress=progress,
			)
			parser.run(shards.in_network, shards.provider_references)

			files = sink.finalize()
		except BaseException:
			# Workers may be waiting on the sink, so they go first
			pool.stop_and_wait()
			sink.abort()
			raise

	return ParseStats(
		root_uuid=root_uuid,
		in_network_shards=len(shards.in_network),
		provider_reference_shards=len(shards.provider_references),
		in_network_items=parser.in_network_items.value,
		in_network_matched=parser.in_network_matched.value,
		provider_references=parser.provider_references.value,
		provider_references_matched=parser.provider_references_matched.value,
		provider_filter_size=len(parser.providers),
		records_written=sink.rows_written,
		files=list(files),
	)

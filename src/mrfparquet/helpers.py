import csv
import fnmatch
import glob
import gzip
import io
import logging
import os
import time
import uuid
from itertools import chain, count
from pathlib import Path
from urllib.parse import urlparse

import requests
from pyarrow import fs
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from mrfparquet.exceptions import InvalidMRF

log = logging.getLogger(__name__)

# Below DEBUG, for per-object messages
TRACE = 5
logging.addLevelName(TRACE, 'TRACE')

SUPPORTED_SUFFIXES = ('.json', '.jsonl', '.ndjson', '.csv')

# Opened through pyarrow's filesystems rather than open()
FILESYSTEM_SCHEMES = ('file', 's3', 'gs', 'gcs')

# Seconds without a byte from the server before a download gives up
DOWNLOAD_TIMEOUT = 300
MAX_RETRIES = 10
RETRY_STATUSES = (429, 500, 502, 503, 504)


def prepend(value, iterator):
	"""Prepend a single value in front of an iterator
	>>>  prepend(1, [2, 3, 4])
	>>>  1 2 3 4
	"""
	return chain([value], iterator)


def peek(iterator):
	"""
	Usage:
	>>> next_, iter = peek(iter)
	allows you to peek at the next value of the iterator
	"""
	try: next_ = next(iterator)
	except StopIteration: return None, iterator
	return next_, prepend(next_, iterator)


def session_with_retries(retries: int = MAX_RETRIES, backoff: float = 0.3) -> requests.Session:
	"""
	A session that retries failed connections and 429/5xx responses,
	waiting as long as a Retry-After header asks for
	"""
	retry = Retry(
		total=retries,
		backoff_factor=backoff,
		status_forcelist=RETRY_STATUSES,
		allowed_methods=['GET', 'HEAD'],
		respect_retry_after_header=True,
	)
	s = requests.Session()
	s.mount('https://', HTTPAdapter(max_retries=retry))
	s.mount('http://', HTTPAdapter(max_retries=retry))
	return s


def is_filesystem_uri(loc) -> bool:

	return urlparse(str(loc)).scheme in FILESYSTEM_SCHEMES


def get_filesystem(loc) -> tuple[fs.FileSystem, str]:
	"""
	>>> get_filesystem('s3://bucket/shards')
	(<pyarrow._s3fs.S3FileSystem ...>, 'bucket/shards')
	"""
	return fs.FileSystem.from_uri(str(loc))


def join_uri(left, right) -> str:

	return str(left).rstrip('/') + '/' + str(right).lstrip('/')


class MRFOpen:
	"""
	Context manager for opening MRFs, their shards and the services CSV.
	Usage:
	>>> with MRFOpen('localfile.json') as f:
	or
	>>> with MRFOpen(some_json_url) as f:
	or
	>>> with MRFOpen('gs://bucket/shards/root.json') as f:
	including both zipped and unzipped files. Always yields a binary
	file object.
	"""

	def __init__(self, loc, timeout: float = DOWNLOAD_TIMEOUT, retries: int = MAX_RETRIES):
		self.loc = str(loc)
		self.timeout = timeout
		self.retries = retries
		self.f = None
		self.s = None
		self.r = None

		parsed_url = urlparse(self.loc)
		self.suffix = ''.join(Path(parsed_url.path).suffixes)
		if not self.suffix:
			self.suffix = ''.join(Path(parsed_url.query).suffixes)

		plain_suffix = self.suffix.removesuffix('.gz')
		if not plain_suffix.endswith(SUPPORTED_SUFFIXES):
			raise InvalidMRF(f'Suffix not supported: {self.loc=} {self.suffix=}')

		self.is_gzip = self.suffix.endswith('.gz')
		self.is_remote = parsed_url.scheme in ('http', 'https')
		self.on_filesystem = parsed_url.scheme in FILESYSTEM_SCHEMES

	def __enter__(self):
		if self.is_remote:
			self.s = session_with_retries(self.retries)
			self.r = self.s.get(self.loc, stream=True, timeout=self.timeout)
			self.r.raise_for_status()

			if self.is_gzip:
				self.f = gzip.GzipFile(fileobj=self.r.raw)
			else:
				self.r.raw.decode_content = True
				self.f = self.r.raw

		elif self.on_filesystem:
			filesystem, path = get_filesystem(self.loc)
			stream = filesystem.open_input_stream(path, compression='gzip' if self.is_gzip else None)
			# pyarrow streams can't readline
			self.f = io.BufferedReader(stream)

		elif self.is_gzip:
			self.f = gzip.open(self.loc, 'rb')

		else:
			self.f = open(self.loc, 'rb')

		log.debug(f'Opened file: {self.loc}')
		return self.f

	def __exit__(self, exc_type, exc_val, exc_tb):
		if self.f is not None:
			self.f.close()

		if self.is_remote:
			if self.r is not None:
				self.r.close()
			if self.s is not None:
				self.s.close()


def import_csv_to_set(loc, skip_header: bool = True) -> set[str]:
	"""
	Imports the first column of a CSV file as a set of strings.
	The remaining columns are ignored.
	"""
	items = set()

	with MRFOpen(loc) as f:
		reader = csv.reader(io.TextIOWrapper(f, encoding='utf-8-sig', newline=''))
		if skip_header:
			next(reader, None)

		for row in reader:
			if not row:
				continue
			item = row[0].strip()
			if item:
				items.add(item)

	return items


def make_dir(out_dir):

	if is_filesystem_uri(out_dir):
		filesystem, path = get_filesystem(out_dir)
		filesystem.create_dir(path, recursive=True)
	else:
		os.makedirs(out_dir, exist_ok=True)


def list_shards(in_dir) -> list[str]:
	"""Every JSON(L) shard in a directory, sorted by name"""
	pattern = '*.json*'

	if not is_filesystem_uri(in_dir):
		return sorted(glob.glob(os.path.join(str(in_dir), pattern)))

	filesystem, path = get_filesystem(in_dir)
	infos = filesystem.get_file_info(fs.FileSelector(path, allow_not_found=True))
	return sorted(
		join_uri(in_dir, info.base_name)
		for info in infos
		if info.type == fs.FileType.File and fnmatch.fnmatch(info.base_name, pattern)
	)


# Sortable: a millisecond timestamp followed by a process-wide
# sequence number, then random bits to keep separate runs apart
_id_sequence = count()


def get_unique_id() -> str:

	millis = time.time_ns() // 1_000_000
	seq = next(_id_sequence) & 0xFFFFFFFF
	return f'{millis:012x}{seq:08x}{uuid.uuid4().hex[:8]}'


def timed(func, *args, **kwargs) -> tuple[object, float]:
	"""Runs func and returns its result and the elapsed seconds"""
	start = time.perf_counter()
	result = func(*args, **kwargs)
	return result, time.perf_counter() - start

"""
Splits one MRF (a single, possibly huge, JSON document) into the shards
`parse` reads:

	root.json                        everything but the two arrays
	in_network_0000.jsonl            one in_network item per line
	provider_references_0000.jsonl   one provider reference per line

The document is streamed once, so the arrays can come in any order and
never have to fit in memory. Only one item is held at a time.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from typing import Generator

import ijson

from mrfparquet.exceptions import InvalidMRF
from mrfparquet.helpers import DOWNLOAD_TIMEOUT, MRFOpen, make_dir, peek

log = logging.getLogger(__name__)

SHARDED_KEYS = ('in_network', 'provider_references')
SHARD_TEMPLATE = '{key}_{index:04d}.jsonl'
ROOT_FILENAME = 'root.json'

# Events that open a container; everything else can finish a value
_OPENING_EVENTS = ('start_map', 'start_array', 'map_key')


def prepare_out_dir(out_dir, overwrite: bool = False) -> None:

	make_dir(out_dir)

	entries = os.listdir(out_dir)
	if not entries:
		return

	if not overwrite:
		raise FileExistsError(f'Output directory is not empty: {out_dir}')

	log.info(f'Removing the contents of {out_dir}')
	for entry in entries:
		path = os.path.join(out_dir, entry)
		if os.path.isdir(path) and not os.path.islink(path):
			shutil.rmtree(path)
		else:
			os.remove(path)


def build_value(parser: Generator, key: str):
	"""Builds the value that follows the top-level `key`"""
	builder = ijson.ObjectBuilder()
	for prefix, event, value in parser:
		builder.event(event, value)
		if prefix == key and event not in _OPENING_EVENTS:
			return builder.value

	raise InvalidMRF(f'Document ended inside {key}')


def gen_array_items(parser: Generator, key: str) -> Generator:
	"""Yields the items of the top-level array `key` one at a time"""
	prefix, event, _ = next(parser, (None, None, None))
	if (prefix, event) != (key, 'start_array'):
		raise InvalidMRF(f'{key} must be an array')

	item_prefix = f'{key}.item'
	builder = ijson.ObjectBuilder()

	for prefix, event, value in parser:
		if (prefix, event) == (key, 'end_array'):
			return

		builder.event(event, value)
		if prefix == item_prefix and event not in _OPENING_EVENTS:
			yield builder.value
			builder = ijson.ObjectBuilder()

	raise InvalidMRF(f'Document ended inside {key}')


def write_shard(items: Generator, path: str) -> int:

	lines = 0
	with open(path, 'w', encoding='utf-8') as f:
		for item in items:
			f.write(json.dumps(item, separators=(',', ':')))
			f.write('\n')
			lines += 1

	log.debug(f'Wrote {lines} lines to {path}')
	return lines


def split_file(loc, out_dir, overwrite: bool = False, timeout: float = DOWNLOAD_TIMEOUT) -> dict[str, int]:
	"""
	Returns the number of lines written to each shard. An empty array
	gets no shard at all. `timeout` only applies when `loc` is a URL.
	"""
	prepare_out_dir(out_dir, overwrite)

	root = {}
	lines = {}
	shard_index = dict.fromkeys(SHARDED_KEYS, 0)

	with MRFOpen(loc, timeout=timeout) as f:
		parser = ijson.parse(f, use_float=True)
		try:
			for prefix, event, value in parser:
				if (prefix, event) != ('', 'map_key'):
					continue

				if value not in SHARDED_KEYS:
					root[value] = build_value(parser, value)
					continue

				first, items = peek(gen_array_items(parser, value))
				if first is None:
					log.info(f'{value} is empty')
					continue

				filename = SHARD_TEMPLATE.format(key=value, index=shard_index[value])
				shard_index[value] += 1
				lines[filename] = write_shard(items, os.path.join(out_dir, filename))

		except ijson.JSONError as e:
			raise InvalidMRF(f'Invalid JSON in {loc}: {e}') from e

	with open(os.path.join(out_dir, ROOT_FILENAME), 'w', encoding='utf-8') as f:
		json.dump(root, f)

	log.info(f'Split {loc} into {ROOT_FILENAME} and {len(lines)} shards')
	return lines

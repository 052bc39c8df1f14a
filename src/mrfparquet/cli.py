"""
>>> mrfparquet split -i mrf.json.gz -o shards/
>>> mrfparquet parse -i shards/ -o out/ -s services.csv -p 42
>>> mrfparquet pipeline -i https://example.com/mrf.json.gz -o out/ -s services.csv

`pipeline` is split, parse and removing the shards in one go.
"""
from __future__ import annotations

import argparse
import logging
import sys

from tqdm.contrib.logging import logging_redirect_tqdm

from mrfparquet.config import configure_logging, get_setting, load_config
from mrfparquet.flatteners import UNSET_PLAN_ID
from mrfparquet.helpers import timed
from mrfparquet.parse import ParseStats, parse
from mrfparquet.splitter import split_file
from mrfparquet.steps import new_parse_pipeline

log = logging.getLogger('mrfparquet')


def build_parser() -> argparse.ArgumentParser:

	parser = argparse.ArgumentParser(
		'mrfparquet',
		description='Filter price transparency MRFs into parquet files',
	)
	parser.add_argument('--config', help='YAML config file (default: ./config.yaml if present)')
	parser.add_argument('--no-progress', action='store_true', help='hide progress bars')

	commands = parser.add_subparsers(dest='command', required=True)

	split = commands.add_parser('split', help='split an MRF into root.json and JSONL shards')
	split.add_argument('-i', '--input', required=True, help='MRF file or URL')
	split.add_argument('-o', '--output', required=True, help='directory for the shards')
	split.add_argument('--overwrite', action='store_true', help='empty the output directory first')

	for name, help_, input_help in (
		('parse', 'parse split shards into parquet files', 'directory of shards'),
		('pipeline', 'split and parse an MRF', 'MRF file or URL'),
	):
		command = commands.add_parser(name, help=help_)
		command.add_argument('-i', '--input', required=True, help=input_help)
		command.add_argument('-o', '--output', required=True, help='directory for the parquet files')
		command.add_argument('-s', '--services', help='CSV of billing codes to keep (default: services.file)')
		command.add_argument('-p', '--plan-id', type=int, default=UNSET_PLAN_ID, help='overrides the plan_id of the MRF')

	return parser


def parse_kwargs(config: dict, progress: bool) -> dict:
	"""Settings for parse() that come from the config"""
	return dict(
		max_workers=get_setting(config, 'pool.max_workers'),
		max_capacity=get_setting(config, 'pool.max_capacity'),
		max_line_length=get_setting(config, 'reader.max_line_length'),
		in_network_lines=get_setting(config, 'reader.in_network_lines'),
		provider_reference_lines=get_setting(config, 'reader.provider_reference_lines'),
		max_rows_per_file=get_setting(config, 'writer.max_rows_per_file'),
		max_rows_per_group=get_setting(config, 'writer.max_rows_per_group'),
		flush_rows=get_setting(config, 'writer.flush_rows'),
		filename_template=get_setting(config, 'writer.filename_template'),
		compression=get_setting(config, 'writer.compression'),
		queue_size=get_setting(config, 'writer.queue_size'),
		progress=progress,
	)


def log_stats(stats: ParseStats) -> None:

	log.info(
		f'Parsed {stats.in_network_shards} in-network and '
		f'{stats.provider_reference_shards} provider reference shards'
	)
	log.info(f'In-network items: {stats.in_network_items} scanned, {stats.in_network_matched} matched')
	log.info(
		f'Provider references: {stats.provider_references} scanned, '
		f'{stats.provider_references_matched} matched '
		f'({stats.provider_filter_size} referenced)'
	)
	log.info(f'Wrote {stats.records_written} records to {len(stats.files)} files')


def run(args: argparse.Namespace, config: dict) -> None:

	progress = not args.no_progress

	if args.command == 'split':
		lines = split_file(
			args.input,
			args.output,
			overwrite=args.overwrite,
			timeout=get_setting(config, 'pipeline.download_timeout'),
		)
		for shard, count in lines.items():
			log.info(f'{shard}: {count} lines')
		return

	services = args.services or get_setting(config, 'services.file')
	if not services:
		raise ValueError('No services file: pass --services or set services.file')

	if args.command == 'parse':
		stats = parse(
			args.input,
			args.output,
			services,
			args.plan_id,
			**parse_kwargs(config, progress),
		)
	else:
		pipeline = new_parse_pipeline(
			args.input,
			args.output,
			services,
			args.plan_id,
			tmp_path=get_setting(config, 'tmp.path'),
			download_timeout=get_setting(config, 'pipeline.download_timeout'),
			**parse_kwargs(config, progress),
		)
		stats = pipeline.run()['Parse']

	log_stats(stats)


def main(argv: list[str] | None = None) -> None:

	args = build_parser().parse_args(argv)

	try:
		config = load_config(args.config)
		configure_logging(get_setting(config, 'log.level'))

		with logging_redirect_tqdm():
			_, elapsed = timed(run, args, config)

	except Exception as e:
		# Everything fatal ends up here
		log.critical(f'{type(e).__name__}: {e}')
		sys.exit(1)

	log.info(f'Done in {elapsed:.1f} seconds')


if __name__ == '__main__':
	main()

"""
Settings come from three places, first one wins:

1. environment variables, MRF_<SECTION>_<KEY> (writer.flush_rows is
   MRF_WRITER_FLUSH_ROWS)
2. a YAML file, nested by section:

    log:
      level: debug
    writer:
      max_rows_per_file: 10000000

3. DEFAULTS below
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from mrfparquet.helpers import TRACE

log = logging.getLogger(__name__)

ENV_PREFIX = 'MRF_'
DEFAULT_CONFIG_FILE = 'config.yaml'

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'

LOG_LEVELS = {
	'trace':   TRACE,
	'debug':   logging.DEBUG,
	'info':    logging.INFO,
	'warn':    logging.WARNING,
	'warning': logging.WARNING,
	'error':   logging.ERROR,
}

DEFAULTS: dict[str, dict[str, Any]] = {
	'log': {
		'level': 'info',
	},
	'services': {
		'file': '',
	},
	'tmp': {
		'path': '',
	},
	'pipeline': {
		# Seconds
		'download_timeout': 300,
	},
	'writer': {
		'max_rows_per_file': 100_000_000,
		'max_rows_per_group': 1_000_000,
		'flush_rows': 50_000,
		'filename_template': '_%04d.zstd.parquet',
		'queue_size': 4 * 1024,
		'compression': 'zstd',
	},
	'pool': {
		'max_workers': 5,
		'max_capacity': 4,
	},
	'reader': {
		'max_line_length': 5_000_000,
		'in_network_lines': 100,
		'provider_reference_lines': 2_000,
	},
}


def load_config(path: Path | str | None = None) -> dict[str, Any]:
	"""
	Loads the YAML config at `path`. Without a path, `config.yaml` in the
	working directory is used if there is one; otherwise there's no config
	and everything comes from the environment and the defaults.
	"""
	if path is None:
		path = Path(DEFAULT_CONFIG_FILE)
		if not path.exists():
			return {}

	path = Path(path)
	config = yaml.safe_load(path.read_text(encoding='utf-8'))

	if config is None:
		return {}
	if not isinstance(config, dict):
		raise ValueError(f'Config file must hold a mapping: {path}')

	log.debug(f'Loaded config from {path}')
	return config


def env_name(key: str) -> str:

	return ENV_PREFIX + key.replace('.', '_').upper()


def _convert(value, default, key: str):

	if isinstance(default, bool):
		if isinstance(value, bool):
			return value
		return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
	if isinstance(default, int):
		try:
			return int(value)
		except (TypeError, ValueError) as e:
			raise ValueError(f'{key} must be an integer: {value!r}') from e
	if value is None:
		return default
	return str(value)


def get_setting(config: dict[str, Any], key: str):
	"""
	>>> get_setting(config, 'writer.max_rows_per_file')
	100000000
	"""
	section, _, name = key.partition('.')
	try:
		default = DEFAULTS[section][name]
	except KeyError:
		raise KeyError(f'Unknown setting: {key}') from None

	env_value = os.environ.get(env_name(key))
	if env_value is not None:
		return _convert(env_value, default, key)

	section_config = config.get(section) or {}
	if name in section_config:
		return _convert(section_config[name], default, key)

	return default


def configure_logging(level: str = 'info') -> None:

	try:
		log_level = LOG_LEVELS[str(level).lower()]
	except KeyError:
		raise ValueError(f'Unknown log level: {level}') from None

	logging.basicConfig(format=LOG_FORMAT, force=True)
	logging.getLogger('mrfparquet').setLevel(log_level)

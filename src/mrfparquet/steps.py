"""
A minimal step runner for the `pipeline` command: split an MRF into a
temporary directory, parse the shards, remove the temporary directory.

>>> pipeline = new_parse_pipeline('mrf.json.gz', 'out/', 'services.csv', plan_id=42)
>>> results = pipeline.run()
>>> results['Parse'].records_written
"""
from __future__ import annotations

import logging
import shutil
import tempfile

from mrfparquet.flatteners import UNSET_PLAN_ID
from mrfparquet.helpers import DOWNLOAD_TIMEOUT, make_dir, timed
from mrfparquet.parse import parse
from mrfparquet.splitter import split_file

log = logging.getLogger(__name__)

TMP_PREFIX = 'mrfparquet'


class Step:

	name = 'Step'
	# Runs even when an earlier step failed
	always = False

	def run(self):
		raise NotImplementedError


class SplitStep(Step):

	name = 'Split'

	def __init__(self, input_path, output_path, overwrite: bool = True, timeout: float = DOWNLOAD_TIMEOUT):
		self.input_path = input_path
		self.output_path = output_path
		self.overwrite = overwrite
		self.timeout = timeout

	def run(self) -> dict[str, int]:
		return split_file(self.input_path, self.output_path, self.overwrite, self.timeout)


class ParseStep(Step):

	name = 'Parse'

	def __init__(self, input_path, output_path, services_file, plan_id: int = UNSET_PLAN_ID, **kwargs):
		self.input_path = input_path
		self.output_path = output_path
		self.services_file = services_file
		self.plan_id = plan_id
		# Passed straight through to parse()
		self.kwargs = kwargs

	def run(self):
		return parse(
			self.input_path,
			self.output_path,
			self.services_file,
			self.plan_id,
			**self.kwargs,
		)


class CleanStep(Step):

	name = 'Clean'
	always = True

	def __init__(self, tmp_path):
		self.tmp_path = tmp_path

	def run(self) -> None:
		shutil.rmtree(self.tmp_path)
		log.debug(f'Removed {self.tmp_path}')


class Pipeline:

	def __init__(self, *steps: Step):
		self.steps = list(steps)

	def run(self) -> dict:
		"""
		Runs the steps in order and returns their results by step name.
		After a failure only the `always` steps run, then the first
		error is raised.
		"""
		results = {}
		error = None

		for step in self.steps:
			if error is not None and not step.always:
				continue

			log.info(f'Running step: {step.name}')
			try:
				results[step.name], elapsed = timed(step.run)
			except Exception as e:
				if error is not None:
					log.error(f'Step {step.name} failed after an earlier failure: {e}')
					continue
				error = e
				continue

			log.info(f'Step {step.name} completed in {elapsed:.1f} seconds')

		if error is not None:
			raise error

		return results


def new_parse_pipeline(
	input_path,
	output_path,
	services_file,
	plan_id: int = UNSET_PLAN_ID,
	tmp_path: str | None = None,
	download_timeout: float = DOWNLOAD_TIMEOUT,
	**parse_kwargs,
) -> Pipeline:
	"""`tmp_path` is where the temporary shard directory goes, the
	system temp directory when not set"""
	if tmp_path:
		make_dir(tmp_path)
	shard_dir = tempfile.mkdtemp(prefix=TMP_PREFIX, dir=tmp_path or None)

	return Pipeline(
		SplitStep(input_path, shard_dir, overwrite=True, timeout=download_timeout),
		ParseStep(shard_dir, output_path, services_file, plan_id, **parse_kwargs),
		CleanStep(shard_dir),
	)

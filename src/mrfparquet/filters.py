from __future__ import annotations

import logging
import threading
from typing import Iterable

from mrfparquet.helpers import import_csv_to_set

log = logging.getLogger(__name__)

# Only these code types are matched against the allow-list
SERVICE_CODE_TYPES = ('HCPCS', 'CPT')


class ServiceAllowList:
	"""
	The billing codes we care about (typically the CMS shoppable
	services list). Built once before parsing starts and only read after
	that, so it needs no locking.
	"""

	def __init__(self, codes: Iterable[str]):
		self._codes = frozenset(str(code).strip() for code in codes)

	@classmethod
	def from_csv(cls, loc) -> ServiceAllowList:
		"""First column of each row after the header is a billing code"""
		services = cls(import_csv_to_set(loc, skip_header=True))
		log.info(f'Loaded {len(services)} services from {loc}')
		return services

	def __len__(self) -> int:
		return len(self._codes)

	def __contains__(self, code) -> bool:
		return str(code) in self._codes

	def allows(self, billing_code_type: str, billing_code: str) -> bool:
		return billing_code_type in SERVICE_CODE_TYPES and billing_code in self


class ProviderReferenceFilter:
	"""
	provider_group_ids seen in the negotiated rates of the in-network
	shards. Written to by many tasks at once while in-network shards are
	parsed, then frozen and only read while provider reference shards are
	parsed.
	"""

	def __init__(self, references: Iterable[str] = ()):
		self._lock = threading.Lock()
		self._references: set[str] = set(references)
		self._frozen = False

	@property
	def frozen(self) -> bool:
		return self._frozen

	def add(self, *references: str) -> None:
		with self._lock:
			if self._frozen:
				raise RuntimeError('Provider reference filter is frozen')
			self._references.update(references)

	def freeze(self) -> None:
		with self._lock:
			self._frozen = True

	def __contains__(self, reference) -> bool:
		if self._frozen:
			return reference in self._references
		with self._lock:
			return reference in self._references

	def __len__(self) -> int:
		with self._lock:
			return len(self._references)


class Counter:
	"""An integer that many threads can increment"""

	def __init__(self, value: int = 0):
		self._lock = threading.Lock()
		self._value = value

	def add(self, n: int = 1) -> int:
		with self._lock:
			self._value += n
			return self._value

	@property
	def value(self) -> int:
		with self._lock:
			return self._value

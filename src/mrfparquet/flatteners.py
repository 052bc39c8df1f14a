"""
All you really need to know
###########################

The functions

>>> in_network_records(item, root_uuid, services, providers)
>>> provider_reference_records(reference, root_uuid, providers)

turn one object from an in-network or provider reference shard into a flat
list of records, parents before children. They return None when the object
is filtered out: either its billing code isn't one of the services we
want, or nobody in the in-network shards referenced its provider group.
Being filtered out isn't an error. A missing required field is, and so is
an object shape we don't handle (covered_services, remote provider
references behind a `location`).

Side effect: every provider reference found in a negotiated rate is added
to `providers`, which is what the provider reference shards are filtered
against later. So all in-network shards have to be done before the first
provider reference shard starts.

Naming conventions
##################

* top-level information --> root
* in-network --> in_network
* negotiated_rates --> rates
* negotiated_prices --> prices
* provider_groups --> groups (there are no other groups)
* provider_group_id --> group_id

`path` arguments are only there to make error messages point at the
offending field, e.g. in_network.negotiated_rates[3].negotiated_prices[0].
"""
from __future__ import annotations

import logging

from mrfparquet.exceptions import (
	MalformedFieldError,
	MissingFieldError,
	UnsupportedRecordError,
)
from mrfparquet.filters import ProviderReferenceFilter, ServiceAllowList
from mrfparquet.helpers import TRACE, get_unique_id
from mrfparquet.schema import (
	BundledCodeRecord,
	InNetworkRecord,
	NegotiatedPriceRecord,
	NegotiatedRateRecord,
	ProviderGroupRecord,
	ProviderRecord,
	Record,
	RootRecord,
	TinRecord,
)

log = logging.getLogger(__name__)

UNSET_PLAN_ID = -1

ROOT_KEYS = [
	'reporting_entity_name',
	'reporting_entity_type',
	'last_updated_on',
	'version',
	'plan_market_type',
	'plan_name',
	'plan_id_type',
	'plan_id',
]

_REQUIRED = object()


def as_object(value, path: str) -> dict:

	if not isinstance(value, dict):
		raise MalformedFieldError(path, 'object', value)
	return value


def as_str(value, path: str) -> str:
	"""Scalars are stringified, the way billing codes and provider
	references show up as numbers in some files"""
	if isinstance(value, str):
		return value
	if isinstance(value, bool):
		return 'true' if value else 'false'
	if isinstance(value, (int, float)):
		return str(value)
	raise MalformedFieldError(path, 'string', value)


def as_int(value, path: str) -> int:

	if isinstance(value, bool):
		raise MalformedFieldError(path, 'integer', value)
	if isinstance(value, int):
		return value
	if isinstance(value, str) and value.strip().isdigit():
		return int(value)
	raise MalformedFieldError(path, 'integer', value)


def get_value(obj: dict, key: str, path: str, default=_REQUIRED):

	value = obj.get(key)
	if value is None:
		if default is _REQUIRED:
			raise MissingFieldError(f'{path}.{key}')
		return default
	return value


def get_str(obj: dict, key: str, path: str, default=_REQUIRED) -> str:

	value = get_value(obj, key, path, default)
	if value is default:
		return value
	return as_str(value, f'{path}.{key}')


def get_float(obj: dict, key: str, path: str) -> float:

	value = get_value(obj, key, path)
	if isinstance(value, bool) or not isinstance(value, (int, float)):
		raise MalformedFieldError(f'{path}.{key}', 'number', value)
	return float(value)


def get_array(obj: dict, key: str, path: str, default=_REQUIRED) -> list:

	value = get_value(obj, key, path, default)
	if not isinstance(value, list):
		raise MalformedFieldError(f'{path}.{key}', 'array', value)
	return value


def get_str_list(obj: dict, key: str, path: str, default=_REQUIRED) -> list[str]:

	arr = get_array(obj, key, path, default)
	return [as_str(value, f'{path}.{key}[{i}]') for i, value in enumerate(arr)]


def get_int_list(obj: dict, key: str, path: str) -> list[int]:

	arr = get_array(obj, key, path)
	return [as_int(value, f'{path}.{key}[{i}]') for i, value in enumerate(arr)]


def root_record(root: dict, plan_id: int = UNSET_PLAN_ID) -> RootRecord:
	"""
	Missing root fields are left empty. `plan_id`, when set, replaces
	whatever the document says (it usually comes from the index file).
	"""
	root = as_object(root, 'root')
	values = {key: get_str(root, key, 'root', default='') for key in ROOT_KEYS}

	if plan_id != UNSET_PLAN_ID:
		values['plan_id'] = str(plan_id)

	return RootRecord(uuid=get_unique_id(), parent_uuid='', **values)


def in_network_record(
	item: dict,
	root_uuid: str,
	services: ServiceAllowList,
) -> InNetworkRecord | None:

	code_type = get_str(item, 'billing_code_type', 'in_network')
	code = get_str(item, 'billing_code', 'in_network')

	if not services.allows(code_type, code):
		log.log(TRACE, f'Skipping {code_type} {code}: not in services list')
		return None

	return InNetworkRecord(
		uuid=get_unique_id(),
		parent_uuid=root_uuid,
		name=get_str(item, 'name', 'in_network'),
		# Required by the schema, but some carriers leave it out
		description=get_str(item, 'description', 'in_network', default=''),
		negotiation_arrangement=get_str(item, 'negotiation_arrangement', 'in_network'),
		billing_code_type=code_type,
		billing_code=code,
		billing_code_type_version=get_str(item, 'billing_code_type_version', 'in_network'),
	)


def bundled_code_records(item: dict, in_uuid: str) -> list[Record]:

	records = []
	for i, bundle in enumerate(get_array(item, 'bundled_codes', 'in_network', default=[])):
		path = f'in_network.bundled_codes[{i}]'
		bundle = as_object(bundle, path)

		records.append(BundledCodeRecord(
			uuid=get_unique_id(),
			parent_uuid=in_uuid,
			billing_code_type=get_str(bundle, 'billing_code_type', path),
			billing_code=get_str(bundle, 'billing_code', path),
			billing_code_type_version=get_str(bundle, 'billing_code_type_version', path),
			description=get_str(bundle, 'description', path, default=''),
		))

	return records


def service_codes(price: dict, billing_class: str, path: str) -> list[str]:
	"""service_code is only required for professional billing"""
	if billing_class == 'professional':
		return get_str_list(price, 'service_code', path)
	return get_str_list(price, 'service_code', path, default=[])


def negotiated_price_records(rate: dict, rate_uuid: str, path: str) -> list[Record]:

	records = []
	for i, price in enumerate(get_array(rate, 'negotiated_prices', path)):
		price_path = f'{path}.negotiated_prices[{i}]'
		price = as_object(price, price_path)
		billing_class = get_str(price, 'billing_class', price_path)

		records.append(NegotiatedPriceRecord(
			uuid=get_unique_id(),
			parent_uuid=rate_uuid,
			negotiated_type=get_str(price, 'negotiated_type', price_path),
			billing_class=billing_class,
			expiration_date=get_str(price, 'expiration_date', price_path),
			negotiated_rate=get_float(price, 'negotiated_rate', price_path),
			additional_information=get_str(price, 'additional_information', price_path, default=''),
			service_codes=service_codes(price, billing_class, price_path),
			billing_code_modifiers=get_str_list(price, 'billing_code_modifier', price_path, default=[]),
		))

	return records


def tin_record(group: dict, parent_uuid: str, path: str) -> TinRecord:

	tin_path = f'{path}.tin'
	tin = as_object(get_value(group, 'tin', path), tin_path)

	return TinRecord(
		uuid=get_unique_id(),
		parent_uuid=parent_uuid,
		tin_type=get_str(tin, 'type', tin_path),
		value=get_str(tin, 'value', tin_path),
	)


def provider_group_records(
	obj: dict,
	parent_uuid: str,
	parent: str,
	path: str,
) -> list[Record]:
	"""
	One provider record (the NPIs) and one tin record per group. Both hang
	off `parent_uuid`; `parent` says which array the groups came from.
	"""
	records = []
	for i, group in enumerate(get_array(obj, 'provider_groups', path)):
		group_path = f'{path}.provider_groups[{i}]'
		group = as_object(group, group_path)

		records.append(ProviderRecord(
			uuid=get_unique_id(),
			parent_uuid=parent_uuid,
			parent=parent,
			npi=get_int_list(group, 'npi', group_path),
		))
		records.append(tin_record(group, parent_uuid, group_path))

	return records


def negotiated_rate_records(
	item: dict,
	in_uuid: str,
	providers: ProviderReferenceFilter,
) -> list[Record]:

	records = []
	for i, rate in enumerate(get_array(item, 'negotiated_rates', 'in_network')):
		path = f'in_network.negotiated_rates[{i}]'
		rate = as_object(rate, path)
		rate_uuid = get_unique_id()

		has_references = rate.get('provider_references') is not None
		has_groups = rate.get('provider_groups') is not None

		if has_references and has_groups:
			raise UnsupportedRecordError(
				f'{path} has both provider_references and provider_groups'
			)

		if has_references:
			references = get_str_list(rate, 'provider_references', path)
			providers.add(*references)

			records.append(NegotiatedRateRecord(
				uuid=rate_uuid,
				parent_uuid=in_uuid,
				provider_references=references,
			))
			records.extend(negotiated_price_records(rate, rate_uuid, path))
			continue

		if not has_groups:
			raise MissingFieldError(f'{path}.provider_groups')

		# Only the rate -> in_network link, the groups are written out
		# right here rather than looked up later
		records.append(NegotiatedRateRecord(uuid=rate_uuid, parent_uuid=in_uuid))
		records.extend(negotiated_price_records(rate, rate_uuid, path))
		records.extend(provider_group_records(rate, in_uuid, 'negotiated_rates', path))

	return records


def in_network_records(
	item: dict,
	root_uuid: str,
	services: ServiceAllowList,
	providers: ProviderReferenceFilter,
) -> list[Record] | None:

	item = as_object(item, 'in_network')

	if 'covered_services' in item:
		raise UnsupportedRecordError('covered_services records are not supported')

	in_record = in_network_record(item, root_uuid, services)
	if in_record is None:
		return None

	records: list[Record] = [in_record]
	records.extend(bundled_code_records(item, in_record.uuid))
	records.extend(negotiated_rate_records(item, in_record.uuid, providers))

	return records


def provider_reference_records(
	reference: dict,
	root_uuid: str,
	providers: ProviderReferenceFilter,
) -> list[Record] | None:

	reference = as_object(reference, 'provider_references')

	if 'location' in reference:
		raise UnsupportedRecordError('location records are not supported')

	group_id = get_str(reference, 'provider_group_id', 'provider_references')
	if group_id not in providers:
		log.log(TRACE, f'Skipping provider group {group_id}: not referenced by any rate')
		return None

	group_uuid = get_unique_id()
	records: list[Record] = [ProviderGroupRecord(
		uuid=group_uuid,
		parent_uuid=root_uuid,
		provider_group_id=group_id,
	)]
	records.extend(provider_group_records(
		reference, group_uuid, 'provider_references', 'provider_references'
	))

	return records

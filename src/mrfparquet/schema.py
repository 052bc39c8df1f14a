"""
Records and the flat table they are written to.

Each kind of MRF object becomes its own frozen record class, tagged with a
`record_type`. Every record is written to the same wide table: `to_row`
fills the columns owned by the record's type and leaves everything else
null. Rows are linked to their parents through `parent_uuid`.

	root
	├── in_network
	│   ├── bundled_codes
	│   └── negotiated_rate
	│       ├── negotiated_prices
	│       └── provider, tin        (inline provider groups, parented to in_network)
	└── provider_group
		└── provider, tin
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar

import pyarrow as pa

# To distinguish data from rows
Row = dict

SCHEMA = pa.schema([
	('uuid',                            pa.string()),
	('parent_uuid',                     pa.string()),
	('record_type',                     pa.string()),

	('reporting_entity_name',           pa.string()),
	('reporting_entity_type',           pa.string()),
	('last_updated_on',                 pa.string()),
	('version',                         pa.string()),
	('plan_market_type',                pa.string()),
	('plan_name',                       pa.string()),
	('plan_id_type',                    pa.string()),
	('plan_id',                         pa.string()),

	('in_name',                         pa.string()),
	('in_description',                  pa.string()),
	('in_negotiation_arrangement',      pa.string()),
	('in_billing_code_type',            pa.string()),
	('in_billing_code',                 pa.string()),
	('in_billing_code_type_version',    pa.string()),

	('in_bc_description',               pa.string()),
	('in_bc_billing_code_type',         pa.string()),
	('in_bc_billing_code',              pa.string()),
	('in_bc_billing_code_type_version', pa.string()),

	('provider_group_id',               pa.string()),

	('provider_parent',                 pa.string()),
	('provider_npi_list',               pa.list_(pa.int64())),

	('provider_tin_value',              pa.string()),
	('provider_tin_type',               pa.string()),

	('in_nr_provider_references',       pa.list_(pa.string())),

	('in_np_negotiated_type',           pa.string()),
	('in_np_billing_class',             pa.string()),
	('in_np_expiration_date',           pa.string()),
	('in_np_additional_information',    pa.string()),
	('in_np_service_codes',             pa.list_(pa.string())),
	('in_np_billing_code_modifiers',    pa.list_(pa.string())),
	('in_np_negotiated_rate',           pa.float64()),
])

# Low-cardinality columns, dictionary encoded in the parquet output
ENUM_COLUMNS = [
	'record_type',
	'plan_market_type',
	'in_negotiation_arrangement',
	'in_billing_code_type',
	'in_bc_billing_code_type',
	'provider_group_id',
	'provider_tin_type',
	'in_np_negotiated_type',
]

RECORD_TYPES = (
	'root',
	'in_network',
	'bundled_codes',
	'negotiated_rate',
	'negotiated_prices',
	'provider_group',
	'provider',
	'tin',
)


@dataclass(frozen=True)
class Record:
	uuid: str
	parent_uuid: str

	record_type: ClassVar[str]
	# attribute name -> column name
	columns: ClassVar[dict[str, str]] = {}

	def to_row(self) -> Row:
		row = dict.fromkeys(SCHEMA.names)
		row['uuid'] = self.uuid
		row['parent_uuid'] = self.parent_uuid
		row['record_type'] = self.record_type

		for attr, column in self.columns.items():
			row[column] = getattr(self, attr)

		return row


@dataclass(frozen=True)
class RootRecord(Record):
	reporting_entity_name: str = ''
	reporting_entity_type: str = ''
	last_updated_on: str = ''
	version: str = ''
	plan_market_type: str = ''
	plan_name: str = ''
	plan_id_type: str = ''
	plan_id: str = ''

	record_type: ClassVar[str] = 'root'
	columns: ClassVar[dict[str, str]] = {
		'reporting_entity_name': 'reporting_entity_name',
		'reporting_entity_type': 'reporting_entity_type',
		'last_updated_on':       'last_updated_on',
		'version':               'version',
		'plan_market_type':      'plan_market_type',
		'plan_name':             'plan_name',
		'plan_id_type':          'plan_id_type',
		'plan_id':               'plan_id',
	}


@dataclass(frozen=True)
class InNetworkRecord(Record):
	name: str
	description: str
	negotiation_arrangement: str
	billing_code_type: str
	billing_code: str
	billing_code_type_version: str

	record_type: ClassVar[str] = 'in_network'
	columns: ClassVar[dict[str, str]] = {
		'name':                      'in_name',
		'description':               'in_description',
		'negotiation_arrangement':   'in_negotiation_arrangement',
		'billing_code_type':         'in_billing_code_type',
		'billing_code':              'in_billing_code',
		'billing_code_type_version': 'in_billing_code_type_version',
	}


@dataclass(frozen=True)
class BundledCodeRecord(Record):
	billing_code_type: str
	billing_code: str
	billing_code_type_version: str
	description: str

	record_type: ClassVar[str] = 'bundled_codes'
	columns: ClassVar[dict[str, str]] = {
		'description':               'in_bc_description',
		'billing_code_type':         'in_bc_billing_code_type',
		'billing_code':              'in_bc_billing_code',
		'billing_code_type_version': 'in_bc_billing_code_type_version',
	}


@dataclass(frozen=True)
class NegotiatedRateRecord(Record):
	# Empty when the rate carries its provider groups inline
	provider_references: list[str] = field(default_factory=list)

	record_type: ClassVar[str] = 'negotiated_rate'
	columns: ClassVar[dict[str, str]] = {
		'provider_references': 'in_nr_provider_references',
	}


@dataclass(frozen=True)
class NegotiatedPriceRecord(Record):
	negotiated_type: str
	billing_class: str
	expiration_date: str
	negotiated_rate: float
	additional_information: str = ''
	service_codes: list[str] = field(default_factory=list)
	billing_code_modifiers: list[str] = field(default_factory=list)

	record_type: ClassVar[str] = 'negotiated_prices'
	columns: ClassVar[dict[str, str]] = {
		'negotiated_type':        'in_np_negotiated_type',
		'billing_class':          'in_np_billing_class',
		'expiration_date':        'in_np_expiration_date',
		'additional_information': 'in_np_additional_information',
		'service_codes':          'in_np_service_codes',
		'billing_code_modifiers': 'in_np_billing_code_modifiers',
		'negotiated_rate':        'in_np_negotiated_rate',
	}


@dataclass(frozen=True)
class ProviderGroupRecord(Record):
	provider_group_id: str

	record_type: ClassVar[str] = 'provider_group'
	columns: ClassVar[dict[str, str]] = {
		'provider_group_id': 'provider_group_id',
	}


@dataclass(frozen=True)
class ProviderRecord(Record):
	# Which array the group came from: provider_references or negotiated_rates
	parent: str
	npi: list[int]

	record_type: ClassVar[str] = 'provider'
	columns: ClassVar[dict[str, str]] = {
		'parent': 'provider_parent',
		'npi':    'provider_npi_list',
	}


@dataclass(frozen=True)
class TinRecord(Record):
	tin_type: str
	value: str

	record_type: ClassVar[str] = 'tin'
	columns: ClassVar[dict[str, str]] = {
		'tin_type': 'provider_tin_type',
		'value':    'provider_tin_value',
	}


def rows_from_records(records: list[Record]) -> list[Row]:

	return [record.to_row() for record in records]

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import RLock
from types import MappingProxyType
from typing import Any, Mapping

from pgcompose.values import to_db_value

logger = logging.getLogger(__name__)

EMPTY_TIMESTAMP = "'0001-01-01 00:00:00 zulu'"

_TYPE_ALIASES = {
	"timestamp with time zone": "timestamptz",
	"timestamp without time zone": "timestamp",
}

_EMPTY_VALUES = {
	"timestamptz": EMPTY_TIMESTAMP,
	"timestamp": EMPTY_TIMESTAMP,
	"smallint": "0",
	"integer": "0",
	"bigint": "0",
	"boolean": "false",
}


class NoSchemaError(LookupError):
	def __init__(self, table: str):
		super().__init__(f"no schema for table {table}")
		self.table = table


def normalize_type(type_name: str) -> str:
	return _TYPE_ALIASES.get(type_name, type_name)


@dataclass(frozen=True)
class ColumnSchema:
	name: str
	type: str
	not_null: bool = False
	pkey: bool = False
	default: str = ""

	def empty_value(self) -> str:
		"""
		SQL literal that stands for "no value" for this column's type.
		"""
		if self.type.endswith("[]"):
			return f"ARRAY[]::{self.type}"
		return _EMPTY_VALUES.get(self.type, "''")

	def to_value_holder(self, position: int) -> str:
		"""
		Placeholder text for this column's value in INSERT/UPDATE SQL.

		``position`` > 0 gives ``$position``; 0 gives a named ``:column`` holder.
		Nullable columns map the type's empty value to NULL; NOT NULL columns
		with a default fall back to the default instead.
		"""
		empty = self.empty_value()
		holder = f"${position}" if position > 0 else f":{self.name}"
		if empty.find("::") > 0:
			# the empty value is cast, so cast the holder too to keep nullif() homogeneous
			holder = f"{holder}::{self.type}"

		if self.not_null and self.default:
			return f"coalesce(nullif({holder},{empty})::{self.type},{self.default})"
		if not self.not_null:
			return f"nullif({holder},{empty})::{self.type}"
		return holder

	def to_value(self, value: Any) -> Any:
		return to_db_value(value)


@dataclass(frozen=True)
class TableSchema:
	name: str
	columns: tuple[ColumnSchema, ...] = ()

	@property
	def primary_keys(self) -> tuple[ColumnSchema, ...]:
		return tuple(c for c in self.columns if c.pkey)

	def columns_by_name(self, *names: str) -> tuple[ColumnSchema, ...]:
		"""
		Columns matching ``names`` in schema order. Names may also be given as
		comma-separated lists ("id, pdf_url"); unknown names are ignored. With no
		names every column is returned.
		"""
		if not names:
			return self.columns
		wanted = {n.strip() for name in names for n in name.split(",")}
		return tuple(c for c in self.columns if c.name in wanted)


class SchemaCatalog:
	"""
	Read-through cache of table schemas, populated once per database identity.

	The collaborator passed as ``db`` needs ``execute_query(sql, args)`` returning
	a list of dict rows. Its ``identity`` attribute (falling back to the object
	itself) keys the cache. Schemas are never refreshed; a failed population is
	not cached, so the next call simply retries.
	"""

	CATALOG_QUERY = """
		SELECT
			c.relname AS table_name,
			a.attname AS column_name,
			format_type(a.atttypid, a.atttypmod) AS type_name,
			a.attnotnull AS not_null,
			EXISTS (
				SELECT 1
				FROM pg_index i
				WHERE i.indrelid = a.attrelid
				AND i.indisprimary
				AND a.attnum = ANY(i.indkey)
			) AS pkey,
			coalesce(pg_get_expr(d.adbin, d.adrelid), '') AS default_expr
		FROM pg_attribute a
		JOIN pg_class c ON a.attrelid = c.oid AND c.relkind = 'r'
		JOIN pg_namespace ns ON c.relnamespace = ns.oid
		LEFT JOIN pg_attrdef d ON a.attrelid = d.adrelid AND a.attnum = d.adnum
		WHERE ns.nspname = $1 AND a.attnum > 0 AND NOT a.attisdropped
		ORDER BY c.oid, a.attnum
	"""

	def __init__(self, namespace: str = "public"):
		self.namespace = namespace
		self._schemas: dict[Any, Mapping[str, TableSchema]] = {}
		self._lock = RLock()

	@staticmethod
	def _identity(db) -> Any:
		identity = getattr(db, "identity", None)
		return db if identity is None else identity

	def get_schema(self, db) -> Mapping[str, TableSchema]:
		key = self._identity(db)
		schema = self._schemas.get(key)
		if schema is not None:
			return schema
		with self._lock:
			schema = self._schemas.get(key)
			if schema is None:
				schema = self._load(db)
				self._schemas[key] = schema
			return schema

	def get_table_schema(self, db, table: str) -> TableSchema:
		schema = self.get_schema(db).get(table)
		if schema is None:
			raise NoSchemaError(table)
		return schema

	def _load(self, db) -> Mapping[str, TableSchema]:
		rows = db.execute_query(self.CATALOG_QUERY, [self.namespace]) or []
		columns: dict[str, list[ColumnSchema]] = {}
		for r in rows:
			columns.setdefault(r["table_name"], []).append(ColumnSchema(
				name=r["column_name"],
				type=normalize_type(r["type_name"]),
				not_null=bool(r["not_null"]),
				pkey=bool(r["pkey"]),
				default=r["default_expr"] or "",
			))
		tables = {name: TableSchema(name, tuple(cols)) for name, cols in columns.items()}
		logger.debug("Loaded schema for %s: %d tables in namespace %s", self._identity(db), len(tables), self.namespace)
		return MappingProxyType(tables)

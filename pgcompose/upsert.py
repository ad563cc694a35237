"""
Schema-aware INSERT/UPDATE generation.

Row values are projected onto the table's columns in catalog order; every
holder is wrapped in the null/cast/default logic its column calls for (see
``ColumnSchema.to_value_holder``).
"""
from __future__ import annotations

import dataclasses
from typing import Any, Mapping, Protocol, runtime_checkable

from pgcompose.schema import ColumnSchema, SchemaCatalog, TableSchema


class UnsupportedSchemaError(ValueError):
	"""The table's shape can't be handled, e.g. a compound primary key for UPDATE."""

	def __init__(self, table: str, primary_keys: tuple[str, ...], message: str):
		super().__init__(message)
		self.table = table
		self.primary_keys = primary_keys


@runtime_checkable
class RowSource(Protocol):
	def row_fields(self) -> Mapping[str, Any]:
		...


def field_map(row: Any) -> dict[str, Any]:
	"""
	Map a row value to ``{column: value}``.

	Accepts a mapping, an object implementing ``row_fields()``, or a dataclass
	instance (a field's ``metadata["column"]`` overrides its column name).
	"""
	if isinstance(row, Mapping):
		return dict(row)
	if isinstance(row, RowSource):
		return dict(row.row_fields())
	if dataclasses.is_dataclass(row) and not isinstance(row, type):
		return {
			f.metadata.get("column", f.name): getattr(row, f.name)
			for f in dataclasses.fields(row)
		}
	raise TypeError(f"Cannot map row of type {type(row).__name__} to columns.")


class UpsertBuilder:
	"""
	Accumulates parallel column / holder / value lists for one statement.

		builder = UpsertBuilder.for_table(catalog, db, "ads")
		sql, values = builder.insert_sql({"ownlocal_id": 1})
		# INSERT INTO ads(ownlocal_id) VALUES(nullif($1,0)::integer), [1]
	"""

	def __init__(self, schema: TableSchema):
		self.schema = schema
		self.columns: list[str] = []
		self.holders: list[str] = []
		self.values: list[Any] = []
		self._selected: tuple[ColumnSchema, ...] | None = None

	@classmethod
	def for_table(cls, catalog: SchemaCatalog, db, table: str) -> "UpsertBuilder":
		return cls(catalog.get_table_schema(db, table))

	def set(self, row: Any, *only: str) -> "UpsertBuilder":
		"""
		Project ``row`` onto the schema (optionally only the named columns).
		Columns missing from the row are skipped.
		"""
		fields = field_map(row)
		self.columns = []
		self.holders = []
		self.values = []
		selected = []
		for col in self.schema.columns_by_name(*only):
			if col.name not in fields:
				continue
			selected.append(col)
			self.columns.append(col.name)
			self.values.append(col.to_value(fields[col.name]))
			self.holders.append(col.to_value_holder(len(self.values)))
		self._selected = tuple(selected)
		return self

	def next(self, row: Any) -> "UpsertBuilder":
		"""
		Replace the values with those of another row, keeping the columns and
		holders chosen by the last ``set``.
		"""
		if self._selected is None:
			return self.set(row)
		fields = field_map(row)
		missing = [c.name for c in self._selected if c.name not in fields]
		if missing:
			raise ValueError(f"Row is missing columns of the prepared statement: {missing}")
		self.values = [c.to_value(fields[c.name]) for c in self._selected]
		return self

	def _require_columns(self) -> None:
		if not self.columns:
			raise ValueError(f"No columns of table {self.schema.name} present in row.")

	def insert_sql(self, row: Any) -> tuple[str, list]:
		self.set(row)
		self._require_columns()
		sql_text = "INSERT INTO {}({}) VALUES({})".format(
			self.schema.name,
			",".join(self.columns),
			",".join(self.holders),
		)
		return sql_text, list(self.values)

	def update_sql(self, row: Any, pkey: Any, *only: str) -> tuple[str, list]:
		"""
		``UPDATE <table> SET ... WHERE <pk>=$n``, with the key value appended last.
		Only single-column primary keys are supported.
		"""
		keys = self.schema.primary_keys
		if len(keys) != 1:
			names = tuple(k.name for k in keys)
			if keys:
				message = f"compound keys not supported (table: {self.schema.name}, keys: {', '.join(names)})"
			else:
				message = f"no primary key (table: {self.schema.name})"
			raise UnsupportedSchemaError(self.schema.name, names, message)

		self.set(row, *only)
		self._require_columns()
		assignments = ", ".join(f"{c} = {h}" for c, h in zip(self.columns, self.holders))
		values = list(self.values) + [pkey]
		sql_text = f"UPDATE {self.schema.name} SET {assignments} WHERE {keys[0].name}=${len(values)}"
		return sql_text, values

from __future__ import annotations

import dataclasses
from collections.abc import Sized
from numbers import Number
from typing import Any

from psycopg2.extensions import ISQLQuote


def is_empty(value: Any) -> bool:
	"""
	Return True when a value counts as "not provided" for its kind.

	None, zero-length containers/strings, zero numbers (False included) and
	dataclass instances equal to their all-defaults value are empty.
	"""
	if value is None:
		return True
	if isinstance(value, Sized):
		return len(value) == 0
	if isinstance(value, Number):
		return value == 0
	if dataclasses.is_dataclass(value) and not isinstance(value, type):
		try:
			return value == type(value)()
		except TypeError:
			# required fields, so there is no zero value to compare with
			return False
	return False


def is_adaptable(value: Any) -> bool:
	"""True for values psycopg2 adapts on its own (its adapters or objects implementing __conform__)."""
	return isinstance(value, ISQLQuote) or hasattr(value, "__conform__")


def _array_element(value: Any) -> str:
	if value is None:
		return "NULL"
	if isinstance(value, (list, tuple)):
		return to_array_literal(value)
	if isinstance(value, bool):
		return "t" if value else "f"
	if isinstance(value, Number):
		return str(value)
	text = str(value).replace("\\", "\\\\").replace('"', '\\"')
	return f'"{text}"'


def to_array_literal(values) -> str:
	"""
	Render a sequence as Postgres array-literal text, e.g. ``{"a","b"}`` or ``{1,2}``.
	"""
	return "{" + ",".join(_array_element(v) for v in values) + "}"


def to_db_value(value: Any) -> Any:
	if value is None or is_adaptable(value):
		return value
	if isinstance(value, (list, tuple)):
		return to_array_literal(value)
	return value

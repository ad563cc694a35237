"""
Composable SELECT statements built from independently written fragments.

Each fragment numbers its own placeholders from ``$1``; rendering shifts them
so the whole statement has one gap-free numbering that lines up with the
returned argument list:

	stmt = select("u.*").from_("users u").where("name = $1", "troy")
	stmt.render()           # ("SELECT u.*\\nFROM users u\\nWHERE (name = $1)", ["troy"])
	stmt.render("mefirst")  # (... "WHERE (name = $2)", ["mefirst", "troy"])

Builders are immutable; every configuring call returns a new builder, so a
partially built statement can safely be used as the base of several others.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Sequence

from pgcompose.tokens import apply_format, check_format, renumber


@dataclass(frozen=True)
class Fragment:
	"""
	A piece of SQL with its own locally numbered ``$n`` placeholders.
	"""
	sql: str
	args: tuple[Any, ...] = ()


def _write_fragments(out: list[str], fragments: Sequence[Fragment], joiner: str, args: list) -> None:
	for index, fragment in enumerate(fragments):
		if index > 0:
			out.append(joiner)
		out.append(renumber(fragment.sql, len(args)))
		args.extend(fragment.args)


def _has_join_keyword(partial: str) -> bool:
	words = partial.upper().split()
	return len(words) > 2 and (words[0] == "JOIN" or words[1] == "JOIN")


@dataclass(frozen=True)
class SelectStmt:
	selects: tuple[Fragment, ...] = ()
	froms: tuple[Fragment, ...] = ()
	joins: tuple[Fragment, ...] = ()
	wheres: tuple[Fragment, ...] = ()
	groups: tuple[Fragment, ...] = ()
	havings: tuple[Fragment, ...] = ()
	orders: tuple[Fragment, ...] = ()
	limit_count: int = 0

	def select(self, partial: str, *args) -> "SelectStmt":
		"""Add a SELECT expression, joined by commas."""
		return replace(self, selects=self.selects + (Fragment(partial, args),))

	def from_(self, partial: str, *args) -> "SelectStmt":
		"""Add a FROM item, joined by commas."""
		return replace(self, froms=self.froms + (Fragment(partial, args),))

	def join(self, partial: str, *args) -> "SelectStmt":
		"""
		Add a JOIN. ``JOIN`` is prepended unless the first or second word of the
		fragment is ``JOIN`` (``JOIN b ...``, ``LEFT JOIN b ...``). Only those two
		words are looked at, so a three-word kind such as ``LEFT OUTER JOIN`` still
		gets the prefix; write it as ``LEFT JOIN``.
		"""
		return replace(self, joins=self.joins + (Fragment(partial, args),))

	def where(self, partial: str, *args) -> "SelectStmt":
		"""Add a WHERE condition, wrapped in parentheses and joined by AND."""
		return replace(self, wheres=self.wheres + (Fragment(f"({partial})", args),))

	def having(self, partial: str, *args) -> "SelectStmt":
		"""Add a HAVING condition, wrapped in parentheses and joined by AND."""
		return replace(self, havings=self.havings + (Fragment(f"({partial})", args),))

	def group(self, partial: str, *args) -> "SelectStmt":
		return replace(self, groups=self.groups + (Fragment(partial, args),))

	def order(self, partial: str, *args) -> "SelectStmt":
		return replace(self, orders=self.orders + (Fragment(partial, args),))

	def limit(self, count: int) -> "SelectStmt":
		"""Set or overwrite LIMIT; a count <= 0 renders no LIMIT."""
		return replace(self, limit_count=count)

	def render(self, *previous) -> tuple[str, list]:
		"""
		Return (sql, args). ``previous`` are arguments that already precede this
		statement (e.g. in an enclosing query); numbering starts after them and
		they lead the returned argument list.
		"""
		args: list = list(previous)
		out: list[str] = []

		if self.selects:
			out.append("SELECT ")
			_write_fragments(out, self.selects, ", ", args)
		if self.froms:
			out.append("\nFROM ")
			_write_fragments(out, self.froms, ", ", args)
		for join in self.joins:
			out.append("\n" if _has_join_keyword(join.sql) else "\nJOIN ")
			_write_fragments(out, [join], "", args)
		if self.wheres:
			out.append("\nWHERE ")
			_write_fragments(out, self.wheres, " AND ", args)
		if self.groups:
			out.append("\nGROUP BY ")
			_write_fragments(out, self.groups, ", ", args)
		if self.havings:
			out.append("\nHAVING ")
			_write_fragments(out, self.havings, " AND ", args)
		if self.orders:
			out.append("\nORDER BY ")
			_write_fragments(out, self.orders, ", ", args)
		if self.limit_count > 0:
			out.append(f"\nLIMIT {self.limit_count}")

		return "".join(out), args

	def string(self, *previous) -> str:
		return self.render(*previous)[0]

	def args(self, *previous) -> list:
		"""Positional arguments in the order they appear in the SQL."""
		return self.render(*previous)[1]

	def __str__(self) -> str:
		return self.string()


@dataclass(frozen=True)
class SelectFromStmt:
	"""
	A statement whose SELECT/FROM/JOIN part is a literal SQL prefix; WHERE,
	GROUP BY, HAVING, ORDER BY and LIMIT are still composed from fragments.
	"""
	select_sql: str = ""
	template: str = ""
	stmt: SelectStmt = SelectStmt()

	def select(self, select_sql: str) -> "SelectFromStmt":
		return replace(self, select_sql=select_sql)

	def where(self, partial: str, *args) -> "SelectFromStmt":
		return replace(self, stmt=self.stmt.where(partial, *args))

	def having(self, partial: str, *args) -> "SelectFromStmt":
		return replace(self, stmt=self.stmt.having(partial, *args))

	def group(self, partial: str, *args) -> "SelectFromStmt":
		return replace(self, stmt=self.stmt.group(partial, *args))

	def order(self, partial: str, *args) -> "SelectFromStmt":
		return replace(self, stmt=self.stmt.order(partial, *args))

	def limit(self, count: int) -> "SelectFromStmt":
		return replace(self, stmt=self.stmt.limit(count))

	def limit_or(self, count: int) -> "SelectFromStmt":
		"""Set the limit only if none is set yet."""
		if self.stmt.limit_count == 0:
			return self.limit(count)
		return self

	def format(self, template: str) -> "SelectFromStmt":
		"""
		Wrap the rendered SQL with ``template``, a string whose first
		``{}`` is replaced by the SQL, e.g. ``"SELECT to_json(row) FROM ({}) row"``.
		"""
		return replace(self, template=check_format(template))

	def render(self, *previous) -> tuple[str, list]:
		sql_text, args = self.stmt.render(*previous)
		sql_text = self.select_sql + sql_text
		return apply_format(self.template, sql_text), args

	def string(self, *previous) -> str:
		return self.render(*previous)[0]

	def args(self, *previous) -> list:
		return self.render(*previous)[1]

	def __str__(self) -> str:
		return self.string()


def select(partial: str, *args) -> SelectStmt:
	"""Start a statement, e.g. ``select("u.*").from_("users u").where("name = $1", "troy")``."""
	return SelectStmt().select(partial, *args)


def select_from(select_sql: str) -> SelectFromStmt:
	"""Start a statement from a literal prefix, e.g. ``select_from("SELECT u.* FROM users u")``."""
	return SelectFromStmt(select_sql=select_sql)


def select_where(partial: str, *args) -> SelectFromStmt:
	return SelectFromStmt().where(partial, *args)

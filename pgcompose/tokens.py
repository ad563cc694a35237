"""
Single-pass SQL scanner shared by the statement, call and execution layers,
plus the output-template helpers both builders use.

The grammar is small:

- a quoted literal: ``'...'`` with ``''`` as the only escape
- a cast marker: ``::`` (consumed so ``x::int`` never reads as a ``:int`` holder)
- a named holder: ``:name``, optionally preceded by a ``label :=`` assignment
- a positional holder: ``$n``

Everything else is plain text. Joining the ``text`` of every token gives back
the input unchanged.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class TokenType(Enum):
	TEXT = "text"
	LITERAL = "literal"
	CAST = "cast"
	NAMED = "named"
	POSITIONAL = "positional"


@dataclass(frozen=True)
class Token:
	type: TokenType
	text: str
	name: str | None = None
	label: str | None = None
	position: int | None = None

	@property
	def prefix(self) -> str:
		"""Text of a named holder before its ``:name`` part (the ``label :=`` bit, if any)."""
		if self.type is not TokenType.NAMED:
			return ""
		return self.text[: len(self.text) - len(self.name) - 1]


_TOKENIZE = re.compile(r"""
	(?P<literal>'(?:[^']|'')*')
	|(?P<cast>::)
	|(?P<named>(?:(?P<label>[A-Za-z_][A-Za-z0-9_]*)\s*:=\s*)?:(?P<name>[A-Za-z_][A-Za-z0-9_]*))
	|(?P<positional>\$(?P<position>\d+)\b)
""", re.VERBOSE)


def tokenize(sql: str) -> list[Token]:
	tokens: list[Token] = []
	last_end = 0

	for match in _TOKENIZE.finditer(sql):
		start, end = match.span()
		if start > last_end:
			tokens.append(Token(TokenType.TEXT, sql[last_end:start]))

		if match.group("literal") is not None:
			tokens.append(Token(TokenType.LITERAL, match.group(0)))
		elif match.group("cast") is not None:
			tokens.append(Token(TokenType.CAST, match.group(0)))
		elif match.group("named") is not None:
			tokens.append(Token(
				TokenType.NAMED,
				match.group(0),
				name=match.group("name"),
				label=match.group("label"),
			))
		else:
			tokens.append(Token(TokenType.POSITIONAL, match.group(0), position=int(match.group("position"))))
		last_end = end

	if last_end < len(sql):
		tokens.append(Token(TokenType.TEXT, sql[last_end:]))

	return tokens


def renumber(sql: str, offset: int) -> str:
	"""
	Shift every ``$n`` (n > 0) outside quoted literals by ``offset``.
	"""
	parts = []
	for token in tokenize(sql):
		if token.type is TokenType.POSITIONAL and token.position > 0:
			parts.append(f"${token.position + offset}")
		else:
			parts.append(token.text)
	return "".join(parts)


def to_pyformat(sql: str) -> str:
	"""
	Rewrite ``$n`` holders as psycopg2 ``%(pn)s`` holders.

	Every literal ``%`` (inside quoted literals too) is doubled, since psycopg2
	interpolates the whole statement text once parameters are given.
	"""
	parts = []
	for token in tokenize(sql):
		if token.type is TokenType.POSITIONAL and token.position > 0:
			parts.append(f"%(p{token.position})s")
		else:
			parts.append(token.text.replace("%", "%%"))
	return "".join(parts)


def check_format(template: str) -> str:
	"""
	Validate an output template: empty, or text holding a ``{}`` slot.
	"""
	if template and "{}" not in template:
		raise ValueError("format template must contain a '{}' slot.")
	return template


def apply_format(template: str, sql: str) -> str:
	"""
	Put ``sql`` into the first ``{}`` of ``template``. Any other braces (JSON
	literals and the like) are left as written.
	"""
	if not template:
		return sql
	return template.replace("{}", sql, 1)

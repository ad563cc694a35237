"""
Calls to named-parameter routines built from a sparse parameter set.

A ``Proc`` holds a call template such as::

	users.save(:id, _email:=:email, _password := :password , _name := :name)

Bound holders become positional ``$n`` placeholders, numbered densely in the
order they appear in the template. Unbound holders, together with their
``name :=`` label, ``::type`` cast and trailing comma, are removed so the call
stays valid whatever subset of parameters is bound::

	proc(TEMPLATE).set("id", 1).set("email", "t@me.com").string()
	# users.save($1, _email:=$2)
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from pgcompose.tokens import TokenType, apply_format, check_format, tokenize
from pgcompose.values import is_empty

_LEADING_COMMA = re.compile(r"^\s*,")
_DANGLING_COMMA = re.compile(r"\s*,[\s,]*\)")
_BLANK_ARGS = re.compile(r"\(\s+\)")
# type name after a dropped holder's "::", e.g. uuid, text[], numeric(10,2)
_CAST_TYPE = re.compile(r"^[^,()]*(?:\([\d\s,]*\)[^,()]*)?")


def _tidy(text: str, substituted: bool) -> str:
	text = _DANGLING_COMMA.sub(")", text)
	if not substituted:
		text = _BLANK_ARGS.sub("()", text)
	return text


def _opens_call(pieces: list[tuple[str, bool]]) -> bool:
	for text, is_literal in reversed(pieces):
		if text.strip():
			return not is_literal and text.rstrip().endswith("(")
	return False


@dataclass(frozen=True)
class Proc:
	template: str
	params: Mapping[str, Any] = field(default_factory=dict)
	output_format: str = ""

	def set(self, name: str, value: Any) -> "Proc":
		params = dict(self.params)
		params[name] = value
		return replace(self, params=params)

	def set_params(self, params: Mapping[str, Any], *only: str) -> "Proc":
		"""
		Merge ``params`` into the bound parameters. With ``only``, just the listed
		names are taken from ``params``; other bound parameters are left alone.
		"""
		merged = dict(self.params)
		if only:
			allowed = set(only)
			merged.update((k, v) for k, v in params.items() if k in allowed)
		else:
			merged.update(params)
		return replace(self, params=merged)

	def format(self, template: str) -> "Proc":
		return replace(self, output_format=check_format(template))

	def _bound(self, name: str) -> bool:
		return name in self.params and not is_empty(self.params[name])

	def render(self) -> tuple[str, list]:
		args: list = []
		positions: dict[str, int] = {}
		# (text, is_literal) pieces, tidied per non-literal run
		pieces: list[tuple[str, bool]] = []
		dropped = False
		drop_type = False

		for token in tokenize(self.template):
			if token.type is TokenType.NAMED:
				if token.name not in positions:
					if not self._bound(token.name):
						dropped = True
						drop_type = False
						continue
					args.append(self.params[token.name])
					positions[token.name] = len(args)
				pieces.append((f"{token.prefix}${positions[token.name]}", False))
			elif token.type is TokenType.CAST and dropped and not drop_type:
				# the cast belongs to the dropped holder
				drop_type = True
				continue
			elif token.type is TokenType.TEXT and dropped:
				text = token.text
				if drop_type:
					text = _CAST_TYPE.sub("", text, count=1)
				text = _LEADING_COMMA.sub("", text, count=1)
				if _opens_call(pieces):
					text = text.lstrip()
				pieces.append((text, False))
			else:
				pieces.append((token.text, token.type is TokenType.LITERAL))
			dropped = drop_type = False

		out: list[str] = []
		run: list[str] = []
		for text, is_literal in pieces:
			if is_literal:
				out.append(_tidy("".join(run), bool(args)))
				out.append(text)
				run = []
			else:
				run.append(text)
		out.append(_tidy("".join(run), bool(args)))

		return apply_format(self.output_format, "".join(out)), args

	def string(self) -> str:
		return self.render()[0]

	def args(self) -> list:
		return self.render()[1]

	def __str__(self) -> str:
		return self.string()


def proc(template: str) -> Proc:
	return Proc(template)


class CallStyle(Enum):
	"""How a rendered routine call is invoked."""
	CALL = ""
	SELECT = "SELECT "


def proc_named_sql(
	routine: str,
	params: Mapping[str, Any],
	style: CallStyle = CallStyle.CALL,
) -> tuple[str, list]:
	"""
	Render ``routine(a:=$1,b:=$2)`` from a parameter map.

	Empty and None values are dropped. Names are sorted so the same set of
	parameters always yields the same SQL text (cacheable and checksummable).
	"""
	names = sorted(name for name, value in params.items() if not is_empty(value))
	values = [params[name] for name in names]
	holders = ",".join(f"{name}:=${i}" for i, name in enumerate(names, start=1))
	return f"{style.value}{routine}({holders})", values

# chatsync/infra/filters.py
"""
Predicados de filtro para el backend remoto.

Se evalúan contra un row (dict). Sirven tanto para query/update como
para el filtro de columna de una suscripción realtime.
"""
from typing import Any


class Where:
    def matches(self, row: dict) -> bool:
        raise NotImplementedError

    def __and__(self, other):
        return all_of(self, other)

    def __or__(self, other):
        return any_of(self, other)


class _Eq(Where):
    def __init__(self, column: str, value: Any):
        self.column = column
        self.value = value

    def matches(self, row):
        return row.get(self.column) == self.value

    def __repr__(self):
        return f"{self.column}=eq.{self.value}"


class _IsNull(Where):
    def __init__(self, column: str):
        self.column = column

    def matches(self, row):
        return row.get(self.column) is None

    def __repr__(self):
        return f"{self.column}=is.null"


class _Contains(Where):
    def __init__(self, column: str, text: str):
        self.column = column
        self.text = text

    def matches(self, row):
        value = row.get(self.column)
        return isinstance(value, str) and self.text in value

    def __repr__(self):
        return f"{self.column}=like.*{self.text}*"


class _AllOf(Where):
    def __init__(self, *parts: Where):
        self.parts = parts

    def matches(self, row):
        return all(p.matches(row) for p in self.parts)

    def __repr__(self):
        return "and(" + ",".join(repr(p) for p in self.parts) + ")"


class _AnyOf(Where):
    def __init__(self, *parts: Where):
        self.parts = parts

    def matches(self, row):
        return any(p.matches(row) for p in self.parts)

    def __repr__(self):
        return "or(" + ",".join(repr(p) for p in self.parts) + ")"


def eq(column: str, value: Any) -> Where:
    return _Eq(column, value)


def is_null(column: str) -> Where:
    return _IsNull(column)


def contains(column: str, text: str) -> Where:
    return _Contains(column, text)


def all_of(*parts: Where) -> Where:
    return _AllOf(*parts)


def any_of(*parts: Where) -> Where:
    return _AnyOf(*parts)


def between_users(user_a: int, user_b: int) -> Where:
    """Mensajes en cualquier dirección entre dos usuarios."""
    return any_of(
        all_of(eq("sender_id", user_a), eq("receiver_id", user_b)),
        all_of(eq("sender_id", user_b), eq("receiver_id", user_a)),
    )

from __future__ import annotations
from dataclasses import dataclass
from typing import Union


Value = Union[int, str]

DEFAULT_VALUE: Value = 0


class Operand:
    """Describes where a value comes from or goes to."""

    writable = False


@dataclass(frozen=True)
class Immediate(Operand):
    value: Value

    def __str__(self) -> str:
        if isinstance(self.value, str):
            return f'"{self.value}"'
        return str(self.value)


@dataclass(frozen=True)
class Register(Operand):
    name: str
    writable = True

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Slot(Operand):
    index: Operand
    writable = True

    def __str__(self) -> str:
        return f"sp[{self.index}]"


def render_value(value: Value) -> str:
    """Text form used by printf: base-10 integers, text verbatim."""
    if isinstance(value, str):
        return value
    return str(int(value))


def describe_value(value: Value) -> str:
    if isinstance(value, str):
        return f"text {value!r}"
    return f"integer {value}"

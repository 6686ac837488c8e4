from __future__ import annotations
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from lexer import VMError
from operands import DEFAULT_VALUE, Immediate, Operand, Register, Slot, Value, describe_value

if TYPE_CHECKING:
    from loader import SourceLocation


class VMRuntimeError(VMError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional["SourceLocation"] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class TypeMismatch(VMRuntimeError):
    pass


class InvalidAddress(VMRuntimeError):
    pass


class CallStackUnderflow(VMRuntimeError):
    pass


@dataclass
class Frame:
    name: str
    return_pc: int
    destination: Optional[Operand]
    frame_id: str
    call_location: Optional["SourceLocation"] = None


class Memory:
    """Flat slot array that grows on write and never shrinks.

    max_slots, when set, caps how far a write may grow the array. Reads are
    never capped: an index past the end reads as the default value.
    """

    def __init__(self, max_slots: Optional[int] = None) -> None:
        self.max_slots = max_slots
        self.slots: List[Value] = []

    def __len__(self) -> int:
        return len(self.slots)

    def check(self, index: int) -> int:
        if index < 0:
            raise InvalidAddress(f"Negative slot index sp[{index}]")
        return index

    def read(self, index: int) -> Value:
        self.check(index)
        if index >= len(self.slots):
            return DEFAULT_VALUE
        return self.slots[index]

    def write(self, index: int, value: Value) -> None:
        self.check(index)
        if self.max_slots is not None and index >= self.max_slots:
            raise InvalidAddress(f"Slot index sp[{index}] exceeds the memory limit of {self.max_slots} slots")
        if index >= len(self.slots):
            self.slots.extend([DEFAULT_VALUE] * (index + 1 - len(self.slots)))
        self.slots[index] = value

    def ranges(self) -> List[str]:
        """Render memory, collapsing runs of default slots into a..b ranges."""
        out: List[str] = []
        start: Optional[int] = None
        for index, value in enumerate(self.slots):
            if value == DEFAULT_VALUE:
                if start is None:
                    start = index
                continue
            if start is not None:
                out.append(_default_run(start, index - 1))
                start = None
            out.append(f"{index}: {value!r}")
        if start is not None:
            out.append(_default_run(start, len(self.slots) - 1))
        return out


def _default_run(start: int, end: int) -> str:
    if start == end:
        return f"{start}: {DEFAULT_VALUE!r}"
    return f"{start}..{end}: {DEFAULT_VALUE!r}"


@dataclass
class ExecutionState:
    registers: Dict[str, Value] = field(default_factory=dict)
    memory: Memory = field(default_factory=Memory)
    call_stack: List[Frame] = field(default_factory=list)

    def read(self, operand: Operand) -> Value:
        if isinstance(operand, Immediate):
            return operand.value
        if isinstance(operand, Register):
            return self.registers.get(operand.name, DEFAULT_VALUE)
        if isinstance(operand, Slot):
            return self.memory.read(self.address(operand))
        raise TypeError(f"Cannot read operand {operand!r}")

    def write(self, operand: Operand, value: Value) -> None:
        if isinstance(operand, Register):
            self.registers[operand.name] = value
            return
        if isinstance(operand, Slot):
            self.memory.write(self.address(operand), value)
            return
        raise InvalidAddress(f"Cannot write to {operand}")

    def address(self, slot: Slot) -> int:
        index = self.read(slot.index)
        if isinstance(index, str):
            raise InvalidAddress(f"Slot index {slot.index} holds {describe_value(index)}, expected an integer")
        return self.memory.check(index)

    def push_frame(self, frame: Frame) -> None:
        self.call_stack.append(frame)

    def pop_frame(self) -> Frame:
        if not self.call_stack:
            raise CallStackUnderflow("Return with an empty call stack")
        return self.call_stack.pop()

    @property
    def depth(self) -> int:
        return len(self.call_stack)

    def snapshot(self) -> Dict[str, str]:
        def _render(val: Value) -> str:
            rendered = repr(val)
            if len(rendered) > 80:
                rendered = rendered[:77] + "..."
            return rendered

        return {k: _render(v) for k, v in sorted(self.registers.items())}

    def format(self) -> str:
        lines = ["Registers:"]
        registers = self.snapshot()
        if not registers:
            lines.append("  (none written)")
        for name, rendered in registers.items():
            lines.append(f"  {name} = {rendered}")
        lines.append(f"Memory ({len(self.memory)} slots):")
        for entry in self.memory.ranges():
            lines.append(f"  {entry}")
        return "\n".join(lines)

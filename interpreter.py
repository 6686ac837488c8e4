from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from loader import Instruction, Program, SourceLocation
from operands import Value, describe_value
from state import ExecutionState, Frame, Memory, TypeMismatch, VMRuntimeError
from syscalls import SyscallContext, SyscallRegistry, build_default_syscalls


ENTRY_FRAME_NAME = "<entry>"


class ExitSignal(Exception):
    def __init__(self, value: Optional[Value] = None) -> None:
        super().__init__(value)
        self.value = value


@dataclass
class StepRecord:
    """One executed instruction, captured just before it runs."""

    step: int
    pc: int
    opcode: str
    instruction: str
    frame_id: str
    frame_name: str
    depth: int
    location: SourceLocation
    registers: Optional[Dict[str, str]]


class StepLog:
    def __init__(self) -> None:
        self.records: List[StepRecord] = []
        self.frame_last_record: Dict[str, StepRecord] = {}

    def __len__(self) -> int:
        return len(self.records)

    def record(
        self,
        *,
        pc: int,
        instruction: Instruction,
        frame_id: str,
        frame_name: str,
        depth: int,
        registers: Optional[Dict[str, str]] = None,
    ) -> StepRecord:
        entry = StepRecord(
            step=len(self.records),
            pc=pc,
            opcode=instruction.opcode,
            instruction=str(instruction),
            frame_id=frame_id,
            frame_name=frame_name,
            depth=depth,
            location=instruction.location,
            registers=registers,
        )
        self.records.append(entry)
        self.frame_last_record[frame_id] = entry
        return entry

    def last_for_frame(self, frame_id: str) -> Optional[StepRecord]:
        return self.frame_last_record.get(frame_id)


def _wrapping(op: Callable[..., Any], left: int, right: int) -> int:
    # int64 arrays wrap on overflow instead of promoting like Python ints.
    with np.errstate(over="ignore"):
        result = op(np.array([left], dtype=np.int64), np.array([right], dtype=np.int64))
    return int(result[0])


class Interpreter:
    def __init__(
        self,
        program: Program,
        *,
        verbose: bool = False,
        syscalls: Optional[SyscallRegistry] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        max_slots: Optional[int] = None,
    ) -> None:
        self.program = program
        self.verbose = verbose
        self.syscalls = syscalls or build_default_syscalls()
        self.output_sink = output_sink or (lambda text: print(text))
        self.max_slots = max_slots
        self._reset()

    def _reset(self) -> None:
        self.state = ExecutionState(memory=Memory(self.max_slots))
        self.pc = 0
        self.frame_counter = 0
        self.entry_frame_id = self._new_frame_id()
        self.current: Optional[Instruction] = None
        self.exit_value: Optional[Value] = None
        self.log = StepLog()

    def run(self) -> Optional[Value]:
        """Execute the program from instruction 0 and return its exit value, if any."""
        self._reset()
        program = self.program
        execute = self._execute
        try:
            while True:
                instruction = program.fetch(self.pc)
                if instruction is None:
                    break
                self.current = instruction
                execute(instruction)
        except ExitSignal as sig:
            self.exit_value = sig.value
        except VMRuntimeError as error:
            self._annotate(error)
            raise
        except Exception as exc:
            # Surface interpreter bugs through the same traceback path as program faults.
            wrapped = VMRuntimeError(f"Internal interpreter error: {exc}", rule="internal")
            self._annotate(wrapped)
            raise wrapped from exc
        return self.exit_value

    def _annotate(self, error: VMRuntimeError) -> None:
        if self.current is not None:
            if error.location is None:
                error.location = self.current.location
            if error.rule is None:
                error.rule = self.current.opcode
        if self.log.records:
            error.step_index = self.log.records[-1].step

    def _execute(self, instruction: Instruction) -> None:
        self._log_step(instruction)
        opcode = instruction.opcode
        operands = instruction.operands
        state = self.state

        if opcode == "mov":
            destination, source = operands
            state.write(destination, state.read(source))
            self.pc += 1
            return
        if opcode == "add" or opcode == "sub":
            destination, left_op, right_op = operands
            left, right = self._expect_ints(instruction, state.read(left_op), state.read(right_op))
            op = np.add if opcode == "add" else np.subtract
            state.write(destination, _wrapping(op, left, right))
            self.pc += 1
            return
        if opcode == "call":
            destination = operands[0] if operands else None
            target = self.program.labels[instruction.target]
            state.push_frame(
                Frame(
                    name=instruction.target,
                    return_pc=self.pc + 1,
                    destination=destination,
                    frame_id=self._new_frame_id(),
                    call_location=instruction.location,
                )
            )
            self.pc = target
            return
        if opcode == "ret":
            value = state.read(operands[0])
            if not state.call_stack:
                raise ExitSignal(value)
            frame = state.pop_frame()
            # A void call simply drops the returned value.
            if frame.destination is not None:
                state.write(frame.destination, value)
            self.pc = frame.return_pc
            return
        if opcode == "leave":
            if not state.call_stack:
                raise ExitSignal(None)
            frame = state.pop_frame()
            self.pc = frame.return_pc
            return
        if opcode == "syscall":
            ctx = SyscallContext(state=state, output_sink=self.output_sink, location=instruction.location)
            self.syscalls.dispatch(instruction.target, ctx)
            self.pc += 1
            return
        raise VMRuntimeError(f"Unhandled instruction '{opcode}'", location=instruction.location, rule=opcode)

    def _expect_ints(self, instruction: Instruction, left: Value, right: Value) -> Tuple[int, int]:
        if isinstance(left, str) or isinstance(right, str):
            raise TypeMismatch(
                f"'{instruction.opcode}' expects integers but got {describe_value(left)} and {describe_value(right)}",
                location=instruction.location,
                rule=instruction.opcode,
            )
        return left, right

    def _new_frame_id(self) -> str:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return frame_id

    def current_frame(self) -> Tuple[str, str]:
        """Return (frame id, frame name) of the innermost active frame."""
        if self.state.call_stack:
            frame = self.state.call_stack[-1]
            return frame.frame_id, frame.name
        return self.entry_frame_id, ENTRY_FRAME_NAME

    def _log_step(self, instruction: Instruction) -> None:
        frame_id, frame_name = self.current_frame()
        self.log.record(
            pc=self.pc,
            instruction=instruction,
            frame_id=frame_id,
            frame_name=frame_name,
            depth=self.state.depth,
            registers=self.state.snapshot() if self.verbose else None,
        )


@dataclass
class TracebackFrame:
    name: str
    depth: int
    location: Optional[SourceLocation]
    record: Optional[StepRecord]


class TracebackFormatter:
    """Render the active call chain at the point of failure, outermost first."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        interpreter = self.interpreter
        chain = [(ENTRY_FRAME_NAME, interpreter.entry_frame_id, None)]
        for frame in interpreter.state.call_stack:
            chain.append((frame.name, frame.frame_id, frame.call_location))
        frames: List[TracebackFrame] = []
        for depth, (name, frame_id, call_location) in enumerate(chain):
            record = interpreter.log.last_for_frame(frame_id)
            frames.append(
                TracebackFrame(
                    name=name,
                    depth=depth,
                    location=record.location if record else call_location,
                    record=record,
                )
            )
        return frames

    def format_text(self, error: VMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                lines.append(f"    {frame.location.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            record = frame.record
            if record:
                lines.append(f"    pc {record.pc}: {record.instruction} (step {record.step}, depth {record.depth})")
                if verbose and record.registers is not None:
                    registers = ", ".join(f"{k}={v}" for k, v in record.registers.items())
                    lines.append(f"    Registers: {registers}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (instruction: {rule})")
        return "\n".join(lines)

    def to_json(self, error: VMRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for frame in self.build_frames():
            entry: Dict[str, Any] = {"depth": frame.depth, "name": frame.name}
            if frame.location:
                entry["location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "column": frame.location.column,
                    "statement": frame.location.statement,
                }
            record = frame.record
            if record:
                entry["pc"] = record.pc
                entry["step"] = record.step
                entry["opcode"] = record.opcode
                entry["instruction"] = record.instruction
                if record.registers is not None:
                    entry["registers"] = record.registers
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "opcode": error.rule,
                "step": error.step_index,
            },
            "frames": frames_json,
        }
        return json.dumps(data, indent=2)

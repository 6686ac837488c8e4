from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from lexer import MalformedProgram, Lexer, Token
from operands import Immediate, Operand, Register, Slot


INT64 = np.iinfo(np.int64)

SLOT_BASE = "sp"

# opcode -> accepted operand counts
ARITY: Dict[str, Tuple[int, ...]] = {
    "mov": (2,),
    "add": (3,),
    "sub": (3,),
    "call": (1, 2),
    "ret": (1,),
    "leave": (0,),
    "syscall": (1,),
}


class UndefinedLabel(MalformedProgram):
    """Raised when a call names a label the program never defines."""

    def __init__(self, label: str, message: str) -> None:
        super().__init__(message)
        self.label = label


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass(frozen=True)
class Instruction:
    opcode: str
    operands: Tuple[Operand, ...]
    location: SourceLocation = field(compare=False)
    target: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.opcode] + [str(op) for op in self.operands]
        if self.target is not None:
            parts.append(self.target)
        return " ".join(parts)


@dataclass(frozen=True)
class Program:
    instructions: Tuple[Instruction, ...]
    labels: Dict[str, int]
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.instructions)

    def fetch(self, pc: int) -> Optional[Instruction]:
        if 0 <= pc < len(self.instructions):
            return self.instructions[pc]
        return None


class Loader:
    """Two-pass loader: labels first, then instruction bodies."""

    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]) -> None:
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0
        self.line_tokens: List[Token] = []
        self.labels: Dict[str, int] = {}

    def load(self) -> Program:
        lines = self._split_lines()
        self._scan_labels(lines)
        instructions: List[Instruction] = []
        for line in lines:
            if self._is_label_line(line):
                continue
            instructions.append(self._parse_instruction(line))
        return Program(instructions=tuple(instructions), labels=dict(self.labels), filename=self.filename)

    def _split_lines(self) -> List[List[Token]]:
        lines: List[List[Token]] = []
        current: List[Token] = []
        for token in self.tokens:
            if token.type in ("NEWLINE", "EOF"):
                if current:
                    lines.append(current)
                current = []
                continue
            current.append(token)
        return lines

    def _scan_labels(self, lines: List[List[Token]]) -> None:
        position = 0
        for line in lines:
            if self._is_label_line(line):
                name = line[0]
                if name.value in self.labels:
                    raise self._error(f"Duplicate label '{name.value}'", name)
                self.labels[name.value] = position
                continue
            if any(tok.type == "COLON" for tok in line):
                raise self._error("Label definitions must stand alone on their line", line[0])
            position += 1

    @staticmethod
    def _is_label_line(line: List[Token]) -> bool:
        return len(line) == 2 and line[0].type == "IDENT" and line[1].type == "COLON"

    def _parse_instruction(self, line: List[Token]) -> Instruction:
        self.line_tokens = line
        self.index = 0
        head = self._consume("IDENT")
        opcode = head.value
        if opcode not in ARITY:
            raise self._error(f"Unknown instruction '{opcode}'", head)

        location = self._location_from_token(head)
        if opcode == "syscall":
            name = self._consume("IDENT")
            self._expect_end(opcode, head)
            return Instruction(opcode=opcode, operands=(), location=location, target=name.value)

        operands: List[Operand] = []
        while self.index < len(line):
            if opcode == "call" and self.index == len(line) - 1:
                break
            operands.append(self._parse_operand())

        if opcode == "call":
            label = self._consume("IDENT")
            if label.value not in self.labels:
                raise UndefinedLabel(
                    label.value,
                    self._format(f"Undefined label '{label.value}'", label),
                )
            if len(operands) > 1:
                raise self._error(f"'call' expects at most 2 operands but got {len(operands) + 1}", head)
            self._check_destination(operands, opcode, head)
            return Instruction(opcode=opcode, operands=tuple(operands), location=location, target=label.value)

        if len(operands) not in ARITY[opcode]:
            expected = " or ".join(str(n) for n in ARITY[opcode])
            raise self._error(f"'{opcode}' expects {expected} operands but got {len(operands)}", head)
        if opcode in ("mov", "add", "sub"):
            self._check_destination(operands, opcode, head)
        return Instruction(opcode=opcode, operands=tuple(operands), location=location)

    def _check_destination(self, operands: List[Operand], opcode: str, head: Token) -> None:
        if operands and not operands[0].writable:
            raise self._error(f"'{opcode}' destination must be a register or sp[...] slot, not {operands[0]}", head)

    def _parse_operand(self) -> Operand:
        token = self._peek()
        if token.type == "STRING":
            self.index += 1
            return Immediate(token.value)
        if token.type == "NUMBER":
            self.index += 1
            value = int(token.value)
            if value < INT64.min or value > INT64.max:
                raise self._error(f"Integer literal {token.value} does not fit in 64 bits", token)
            return Immediate(value)
        if token.type == "IDENT":
            self.index += 1
            if token.value == SLOT_BASE and self._match("LBRACKET"):
                inner = self._parse_operand()
                self._consume("RBRACKET")
                return Slot(inner)
            return Register(token.value)
        raise self._error(f"Unexpected {token.type} '{token.value}' in operand position", token)

    def _expect_end(self, opcode: str, head: Token) -> None:
        if self.index != len(self.line_tokens):
            raise self._error(f"Too many operands for '{opcode}'", head)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise self._error(f"Expected {token_type} but found {token.type}", token)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self.index < len(self.line_tokens) and self.line_tokens[self.index].type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        if self.index < len(self.line_tokens):
            return self.line_tokens[self.index]
        last = self.line_tokens[-1]
        return Token("NEWLINE", "\n", last.line, last.column + len(last.value))

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)

    def _format(self, message: str, token: Token) -> str:
        location = self._location_from_token(token)
        return f"{message} at {location.file}:{location.line}:{location.column}: {location.statement}"

    def _error(self, message: str, token: Token) -> MalformedProgram:
        return MalformedProgram(self._format(message, token))


def load_program(text: str, filename: str = "<string>") -> Program:
    lexer = Lexer(text, filename)
    tokens = lexer.tokenize()
    loader = Loader(tokens, filename, text.splitlines())
    return loader.load()

from __future__ import annotations
from dataclasses import dataclass
from typing import List


class VMError(Exception):
    """Base class for virtual machine errors."""


class MalformedProgram(VMError):
    """Raised when program text cannot be loaded."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


SYMBOLS = {
    "[": "LBRACKET",
    "]": "RBRACKET",
    ":": "COLON",
}

IDENT_START = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_"
IDENT_PART = IDENT_START + "0123456789"
DIGITS = "0123456789"


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch == " " or ch == "\t" or ch == "\r":
                _advance()
                continue
            if ch == "\n":
                tokens_append(Token("NEWLINE", "\n", self.line, self.column))
                _advance()
                continue
            if ch == ";":
                self._consume_comment()
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch == "-" or ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch in IDENT_START:
                tokens_append(self._consume_identifier())
                continue
            raise MalformedProgram(
                f"Unexpected character '{ch}' at {self.filename}:{self.line}:{self.column}"
            )
        if not tokens or tokens[-1].type != "NEWLINE":
            tokens_append(Token("NEWLINE", "\n", self.line, self.column))
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                return Token("STRING", "".join(chars), line, col)
            if ch == "\n":
                break
            chars.append(ch)
            self._advance()
        raise MalformedProgram(
            f"Unterminated string literal at {self.filename}:{line}:{col}"
        )

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        if self._peek() == "-":
            chars.append("-")
            self._advance()
        while not self._eof and self._peek() in DIGITS:
            chars.append(self._peek())
            self._advance()
        if chars == ["-"]:
            raise MalformedProgram(
                f"Expected digits after '-' at {self.filename}:{line}:{col}"
            )
        # Reject things like 12ab rather than splitting them into two operands.
        if not self._eof and self._peek() in IDENT_PART:
            raise MalformedProgram(
                f"Invalid numeric literal at {self.filename}:{line}:{col}"
            )
        return Token("NUMBER", "".join(chars), line, col)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] in IDENT_PART:
            chars.append(text[self.index])
            _advance()
        return Token("IDENT", "".join(chars), line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1

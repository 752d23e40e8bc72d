"""
Tokenizer for the path-query language.

Turns an expression such as ``$.items[?(@.price > 10)].name`` into a flat
list of tokens for the parser.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from chain_engine.core.exceptions import PathSyntaxError


class TokenType(str, Enum):
    ROOT = "ROOT"              # $
    CURRENT = "CURRENT"        # @ (inside filters)
    DOT = "DOT"                # .
    DOUBLE_DOT = "DOUBLE_DOT"  # ..
    LBRACKET = "LBRACKET"      # [
    RBRACKET = "RBRACKET"      # ]
    LPAREN = "LPAREN"          # (
    RPAREN = "RPAREN"          # )
    QUESTION = "QUESTION"      # ?
    COLON = "COLON"            # :
    STAR = "STAR"              # *
    IDENT = "IDENT"            # bare name
    NUMBER = "NUMBER"          # int or float literal
    STRING = "STRING"          # quoted literal
    OPERATOR = "OPERATOR"      # == != > < >= <=
    EOF = "EOF"


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: Any
    position: int


COMPARISON_OPERATORS = ("==", "!=", ">=", "<=", ">", "<")

_SINGLE_CHAR_TOKENS = {
    "$": TokenType.ROOT,
    "@": TokenType.CURRENT,
    "[": TokenType.LBRACKET,
    "]": TokenType.RBRACKET,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "?": TokenType.QUESTION,
    ":": TokenType.COLON,
    "*": TokenType.STAR,
}

# Characters that end a bare identifier
_IDENT_STOP = set(".[]()?:*$@'\"=!<> \t\n,")


class Tokenizer:
    """Single-pass scanner over a path expression."""

    def __init__(self, path: str):
        self.path = path
        self.pos = 0

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []

        while self.pos < len(self.path):
            char = self.path[self.pos]

            if char.isspace():
                self.pos += 1
                continue

            if char == ".":
                if self._peek(1) == ".":
                    tokens.append(Token(TokenType.DOUBLE_DOT, "..", self.pos))
                    self.pos += 2
                else:
                    tokens.append(Token(TokenType.DOT, ".", self.pos))
                    self.pos += 1
                continue

            operator = self._match_operator()
            if operator:
                tokens.append(Token(TokenType.OPERATOR, operator, self.pos))
                self.pos += len(operator)
                continue

            if char in _SINGLE_CHAR_TOKENS:
                tokens.append(Token(_SINGLE_CHAR_TOKENS[char], char, self.pos))
                self.pos += 1
                continue

            if char in ("'", '"'):
                tokens.append(self._read_string(char))
                continue

            if char == "-" or char.isdigit():
                number = self._read_number()
                if number is not None:
                    tokens.append(number)
                    continue

            tokens.append(self._read_identifier())

        tokens.append(Token(TokenType.EOF, None, self.pos))
        return tokens

    def _peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.path[index] if index < len(self.path) else ""

    def _match_operator(self) -> str:
        for operator in COMPARISON_OPERATORS:
            if self.path.startswith(operator, self.pos):
                return operator
        return ""

    def _read_string(self, quote: str) -> Token:
        start = self.pos
        self.pos += 1
        chars: list[str] = []

        while self.pos < len(self.path):
            char = self.path[self.pos]
            if char == "\\" and self.pos + 1 < len(self.path):
                chars.append(self.path[self.pos + 1])
                self.pos += 2
                continue
            if char == quote:
                self.pos += 1
                return Token(TokenType.STRING, "".join(chars), start)
            chars.append(char)
            self.pos += 1

        raise PathSyntaxError("Unterminated string literal", self.path, start)

    def _read_number(self):
        start = self.pos
        end = start
        if self.path[end] == "-":
            end += 1
        digits_start = end
        while end < len(self.path) and self.path[end].isdigit():
            end += 1
        if end == digits_start:
            # A lone '-' is not a number
            return None

        is_float = False
        if end < len(self.path) - 1 and self.path[end] == "." and self.path[end + 1].isdigit():
            is_float = True
            end += 1
            while end < len(self.path) and self.path[end].isdigit():
                end += 1

        # Names like "1st" are identifiers, not numbers
        if end < len(self.path) and self.path[end] not in _IDENT_STOP:
            return None

        text = self.path[start:end]
        self.pos = end
        return Token(TokenType.NUMBER, float(text) if is_float else int(text), start)

    def _read_identifier(self) -> Token:
        start = self.pos
        while self.pos < len(self.path) and self.path[self.pos] not in _IDENT_STOP:
            self.pos += 1

        if self.pos == start:
            raise PathSyntaxError(
                f"Unexpected character {self.path[start]!r}", self.path, start
            )
        return Token(TokenType.IDENT, self.path[start:self.pos], start)


def tokenize(path: str) -> list[Token]:
    """Tokenize a path expression."""
    return Tokenizer(path).tokenize()

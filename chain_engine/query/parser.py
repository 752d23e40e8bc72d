"""
Recursive-descent parser for the path-query language.

Grammar::

    path     := [ '$' | member ] segment*
    segment  := '.' member
              | '..' ( IDENT | STRING | '*' )
              | '[' bracket ']'
    member   := IDENT | NUMBER | STRING | '*'
    bracket  := '*'
              | STRING | IDENT
              | '?' '(' filter ')'
              | [NUMBER] [ ':' [NUMBER] [ ':' [NUMBER] ] ]
    filter   := '@' field* [ OPERATOR literal ]
    field    := '.' ( IDENT | NUMBER | STRING ) | '[' STRING ']'
    literal  := NUMBER | STRING | IDENT
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Union

from chain_engine.core.exceptions import PathSyntaxError
from chain_engine.query.tokenizer import Token, TokenType, tokenize


# ==================== AST ====================


@dataclass(frozen=True)
class PropertyNode:
    name: str


@dataclass(frozen=True)
class IndexNode:
    index: int


@dataclass(frozen=True)
class WildcardNode:
    pass


@dataclass(frozen=True)
class RecursiveNode:
    """Recursive descent; ``name`` of None collects every descendant value."""

    name: Optional[str]


@dataclass(frozen=True)
class FilterNode:
    """``[?(@.field OP literal)]``; without an operator the field must exist and be truthy."""

    field: tuple[str, ...]
    operator: Optional[str] = None
    value: Any = None


@dataclass(frozen=True)
class SliceNode:
    start: Optional[int] = None
    end: Optional[int] = None
    step: Optional[int] = None


PathNode = Union[PropertyNode, IndexNode, WildcardNode, RecursiveNode, FilterNode, SliceNode]


@dataclass(frozen=True)
class PathExpression:
    source: str
    segments: tuple[PathNode, ...]


_KEYWORD_LITERALS = {"true": True, "false": False, "null": None}


# ==================== Parser ====================


class PathParser:
    """Builds a PathExpression from a token stream."""

    def __init__(self, path: str):
        self.path = path
        self.tokens: list[Token] = tokenize(path)
        self.index = 0

    def parse(self) -> PathExpression:
        if self._peek().type == TokenType.EOF:
            raise PathSyntaxError("Empty path", self.path, 0)

        segments: list[PathNode] = []
        token = self._peek()

        if token.type == TokenType.ROOT:
            self._advance()
        elif token.type in (TokenType.IDENT, TokenType.STRING, TokenType.NUMBER, TokenType.STAR):
            # Bare paths like "data.items" are relative to the root
            segments.append(self._parse_member())

        while self._peek().type != TokenType.EOF:
            segments.append(self._parse_segment())

        return PathExpression(source=self.path, segments=tuple(segments))

    # -------------------- helpers --------------------

    def _peek(self, offset: int = 0) -> Token:
        index = min(self.index + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != TokenType.EOF:
            self.index += 1
        return token

    def _expect(self, token_type: TokenType) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise self._error(f"Expected {token_type.value}, found {token.type.value}", token)
        return self._advance()

    def _error(self, message: str, token: Optional[Token] = None) -> PathSyntaxError:
        token = token or self._peek()
        return PathSyntaxError(message, self.path, token.position)

    # -------------------- segments --------------------

    def _parse_segment(self) -> PathNode:
        token = self._peek()

        if token.type == TokenType.DOT:
            self._advance()
            return self._parse_member()

        if token.type == TokenType.DOUBLE_DOT:
            self._advance()
            target = self._advance()
            if target.type == TokenType.STAR:
                return RecursiveNode(None)
            if target.type in (TokenType.IDENT, TokenType.STRING):
                return RecursiveNode(str(target.value))
            raise self._error("Expected a name after '..'", target)

        if token.type == TokenType.LBRACKET:
            self._advance()
            node = self._parse_bracket()
            self._expect(TokenType.RBRACKET)
            return node

        raise self._error(f"Unexpected token {token.value!r}", token)

    def _parse_member(self) -> PathNode:
        token = self._advance()
        if token.type == TokenType.STAR:
            return WildcardNode()
        if token.type in (TokenType.IDENT, TokenType.STRING):
            return PropertyNode(str(token.value))
        if token.type == TokenType.NUMBER and isinstance(token.value, int):
            return PropertyNode(str(token.value))
        raise self._error("Expected a property name", token)

    def _parse_bracket(self) -> PathNode:
        token = self._peek()

        if token.type == TokenType.STAR:
            self._advance()
            return WildcardNode()

        if token.type in (TokenType.STRING, TokenType.IDENT):
            self._advance()
            return PropertyNode(str(token.value))

        if token.type == TokenType.QUESTION:
            self._advance()
            self._expect(TokenType.LPAREN)
            node = self._parse_filter()
            self._expect(TokenType.RPAREN)
            return node

        return self._parse_index_or_slice()

    def _parse_index_or_slice(self) -> PathNode:
        parts: list[Optional[int]] = [self._parse_optional_int()]
        colons = 0

        while self._peek().type == TokenType.COLON and colons < 2:
            self._advance()
            colons += 1
            parts.append(self._parse_optional_int())

        if colons == 0:
            if parts[0] is None:
                raise self._error("Empty brackets")
            return IndexNode(parts[0])

        parts += [None] * (3 - len(parts))
        return SliceNode(start=parts[0], end=parts[1], step=parts[2])

    def _parse_optional_int(self) -> Optional[int]:
        token = self._peek()
        if token.type != TokenType.NUMBER:
            return None
        if not isinstance(token.value, int):
            raise self._error("Indices must be integers", token)
        self._advance()
        return token.value

    # -------------------- filters --------------------

    def _parse_filter(self) -> FilterNode:
        self._expect(TokenType.CURRENT)
        field: list[str] = []

        while True:
            token = self._peek()
            if token.type == TokenType.DOT:
                self._advance()
                name = self._advance()
                if name.type not in (TokenType.IDENT, TokenType.STRING, TokenType.NUMBER):
                    raise self._error("Expected a field name in filter", name)
                field.append(str(name.value))
            elif token.type == TokenType.LBRACKET:
                self._advance()
                name = self._expect(TokenType.STRING)
                self._expect(TokenType.RBRACKET)
                field.append(str(name.value))
            else:
                break

        if self._peek().type != TokenType.OPERATOR:
            return FilterNode(field=tuple(field))

        operator = self._advance().value
        return FilterNode(field=tuple(field), operator=operator, value=self._parse_literal())

    def _parse_literal(self) -> Any:
        token = self._advance()
        if token.type in (TokenType.NUMBER, TokenType.STRING):
            return token.value
        if token.type == TokenType.IDENT:
            # Unquoted words other than keywords are compared as strings
            return _KEYWORD_LITERALS.get(token.value, token.value)
        raise self._error("Expected a literal after the operator", token)


@lru_cache(maxsize=512)
def parse_path(path: str) -> PathExpression:
    """Parse a path expression. Raises PathSyntaxError on malformed input."""
    return PathParser(path).parse()

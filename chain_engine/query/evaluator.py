"""
Evaluation of parsed path expressions against structured data.

Only mapping keys and sequence indices are traversed; attributes of
arbitrary objects are never read. Evaluation never mutates its input and
never raises: malformed paths and missing values resolve to ``MISSING``.
"""

import logging
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from chain_engine.core.exceptions import PathSyntaxError
from chain_engine.query.parser import (
    FilterNode,
    IndexNode,
    PathExpression,
    PathNode,
    PropertyNode,
    RecursiveNode,
    SliceNode,
    WildcardNode,
    parse_path,
)

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for 'no value at this path'. Distinct from None, which is JSON null."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


class PathEvaluator:
    """Walks a PathExpression over a value."""

    def evaluate(self, data: Any, expression: PathExpression) -> Any:
        current = data
        for node in expression.segments:
            if current is MISSING:
                return MISSING
            current = self._apply(node, current)
        return current

    def _apply(self, node: PathNode, current: Any) -> Any:
        if isinstance(node, PropertyNode):
            return self._property(current, node.name)
        if isinstance(node, IndexNode):
            return self._index(current, node.index)
        if isinstance(node, WildcardNode):
            return self._wildcard(current)
        if isinstance(node, RecursiveNode):
            return self._recursive(current, node.name)
        if isinstance(node, FilterNode):
            return self._filter(current, node)
        if isinstance(node, SliceNode):
            return self._slice(current, node)
        return MISSING

    def _property(self, current: Any, name: str) -> Any:
        if isinstance(current, Mapping):
            return current[name] if name in current else MISSING
        if _is_sequence(current) and name.lstrip("-").isdigit():
            return self._index(current, int(name))
        return MISSING

    def _index(self, current: Any, index: int) -> Any:
        if not _is_sequence(current):
            return MISSING
        if -len(current) <= index < len(current):
            return current[index]
        return MISSING

    def _wildcard(self, current: Any) -> Any:
        if isinstance(current, Mapping):
            return list(current.values())
        if _is_sequence(current):
            return list(current)
        return MISSING

    def _recursive(self, current: Any, name: str | None) -> Any:
        matches: list[Any] = []

        def search(value: Any) -> None:
            if isinstance(value, Mapping):
                if name is not None and name in value:
                    matches.append(value[name])
                for child in value.values():
                    if name is None:
                        matches.append(child)
                    search(child)
            elif _is_sequence(value):
                for child in value:
                    if name is None:
                        matches.append(child)
                    search(child)

        search(current)

        if not matches:
            return MISSING
        return matches[0] if len(matches) == 1 else matches

    def _filter(self, current: Any, node: FilterNode) -> Any:
        if isinstance(current, Mapping):
            candidates = list(current.values())
        elif _is_sequence(current):
            candidates = list(current)
        else:
            return MISSING
        return [item for item in candidates if self._matches(item, node)]

    def _matches(self, item: Any, node: FilterNode) -> bool:
        value = item
        for name in node.field:
            value = self._property(value, name)
            if value is MISSING:
                return False

        if node.operator is None:
            return bool(value)

        try:
            return bool(_COMPARATORS[node.operator](value, node.value))
        except TypeError:
            # e.g. "abc" > 10
            return False

    def _slice(self, current: Any, node: SliceNode) -> Any:
        if not _is_sequence(current) or node.step == 0:
            return MISSING
        return list(current[node.start:node.end:node.step])


class PathExtractor:
    """
    Evaluates path queries against arbitrary structured values.

    Supports:
    - ``$`` - the root value itself
    - ``$.a.b`` / ``$['a']['b']`` - property access
    - ``$.items[0]`` / ``$.items[-1]`` - positive and negative indices
    - ``$.items[*]`` / ``$.obj.*`` - wildcard
    - ``$..name`` - recursive descent
    - ``$.items[?(@.price >= 10)]`` - filters
    - ``$.items[1:5:2]`` - slices
    """

    def __init__(self):
        self._evaluator = PathEvaluator()

    def compile(self, path: str) -> PathExpression:
        """Parse a path, raising PathSyntaxError when it is malformed."""
        return parse_path(path.strip())

    def extract(self, data: Any, path: str) -> Any:
        """Return the value at ``path`` or MISSING."""
        try:
            expression = self.compile(path)
        except PathSyntaxError as e:
            logger.debug(f"Unparseable path {path!r}: {e.message}")
            return MISSING
        return self._evaluator.evaluate(data, expression)

    def extract_value(self, data: Any, path: str, default: Any = None) -> Any:
        """Like extract(), with MISSING replaced by ``default``."""
        value = self.extract(data, path)
        return default if value is MISSING else value

    def exists(self, data: Any, path: str) -> bool:
        return self.extract(data, path) is not MISSING


_default_extractor = PathExtractor()


def extract(data: Any, path: str) -> Any:
    """Evaluate ``path`` against ``data`` with a shared extractor."""
    return _default_extractor.extract(data, path)


def extract_value(data: Any, path: str, default: Any = None) -> Any:
    return _default_extractor.extract_value(data, path, default)

"""Path-query language: tokenizer, parser and evaluator."""

from chain_engine.query.evaluator import (
    MISSING,
    PathEvaluator,
    PathExtractor,
    extract,
    extract_value,
)
from chain_engine.query.parser import PathExpression, PathParser, parse_path
from chain_engine.query.tokenizer import Token, TokenType, tokenize

__all__ = [
    "MISSING",
    "PathEvaluator",
    "PathExtractor",
    "extract",
    "extract_value",
    "PathExpression",
    "PathParser",
    "parse_path",
    "Token",
    "TokenType",
    "tokenize",
]

"""
Sandboxed template resolution engine.

Resolves {{ variable.path }} syntax against chain variables without eval/exec.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from chain_engine.query.evaluator import MISSING, PathExtractor


class TemplateValidationError(Exception):
    """Raised when a template cannot be resolved in strict mode."""

    def __init__(self, message: str, template: str, position: Optional[int] = None):
        self.template = template
        self.position = position
        super().__init__(message)


@dataclass
class TemplateReference:
    """Represents a parsed template reference."""

    full_match: str
    expression: str  # e.g. "user.items[0].id"
    root: str        # e.g. "user"
    start_pos: int
    end_pos: int


class TemplateResolver:
    """
    Resolves template expressions safely.

    Supports:
    - {{ token }} - a whole variable
    - {{ user.profile.id }} - nested keys
    - {{ users[0].name }} / {{ users[-1].name }} - list indices
    - {{ orders[?(@.paid == true)] }} - any path-query expression
    - {{ env.NAME }} - whitelisted environment values

    Security:
    - No eval/exec
    - Restricted to variables and whitelisted env values
    - Path traversal only through mapping keys and list indices
    """

    # Pattern to match {{ reference }}
    TEMPLATE_PATTERN = re.compile(r"\{\{\s*(.+?)\s*\}\}")

    # Leading identifier of a reference
    ROOT_PATTERN = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_\-]*)")

    def __init__(
        self,
        variables: Mapping[str, Any],
        env_vars: Optional[Mapping[str, str]] = None,
        strict: bool = False,
        extractor: Optional[PathExtractor] = None,
    ):
        """
        Initialize resolver.

        Args:
            variables: Chain variables
            env_vars: Safe environment variables (whitelist only)
            strict: Raise TemplateValidationError for unresolved references
            extractor: Path extractor used to navigate values
        """
        self.variables = variables
        self.env_vars = env_vars or {}
        self.strict = strict
        self.extractor = extractor or PathExtractor()

    def resolve(self, template: Any) -> Any:
        """
        Resolve all template expressions in a value.

        Handles strings, dicts, and lists recursively.
        """
        if isinstance(template, str):
            return self._resolve_string(template)
        elif isinstance(template, dict):
            return {k: self.resolve(v) for k, v in template.items()}
        elif isinstance(template, list):
            return [self.resolve(v) for v in template]
        else:
            return template

    def _resolve_string(self, template: str) -> Any:
        references = self.find_references(template)

        if not references:
            return template

        # A string that is exactly one reference keeps the value's type
        if len(references) == 1 and references[0].full_match == template.strip():
            return self._resolve_reference(references[0], template)

        result = template
        for ref in reversed(references):  # Reverse to maintain positions
            value = self._resolve_reference(ref, template)
            str_value = str(value) if value is not None else ""
            result = result[:ref.start_pos] + str_value + result[ref.end_pos:]

        return result

    def find_references(self, template: str) -> list[TemplateReference]:
        """Find all template references in a string."""
        references = []

        for match in self.TEMPLATE_PATTERN.finditer(template):
            expression = match.group(1).strip()
            root_match = self.ROOT_PATTERN.match(expression)
            if not root_match:
                continue

            references.append(TemplateReference(
                full_match=match.group(0),
                expression=expression,
                root=root_match.group(1),
                start_pos=match.start(),
                end_pos=match.end(),
            ))

        return references

    def _resolve_reference(self, ref: TemplateReference, template: str) -> Any:
        if ref.root == "env" and "env" not in self.variables:
            source: Mapping[str, Any] = {"env": self.env_vars}
        else:
            source = self.variables

        value = self.extractor.extract(source, ref.expression)

        if value is MISSING:
            if self.strict:
                raise TemplateValidationError(
                    f"Unresolved template reference '{ref.expression}'",
                    template,
                    ref.start_pos,
                )
            return None
        return value


def resolve_templates(
    value: Any,
    variables: Mapping[str, Any],
    strict: bool = False,
) -> Any:
    """
    Resolve all templates in a value against chain variables.

    Convenience function for step handlers.
    """
    return TemplateResolver(variables=variables, strict=strict).resolve(value)

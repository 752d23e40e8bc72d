"""Template resolution against chain variables."""

from chain_engine.template.resolver import (
    TemplateResolver,
    TemplateValidationError,
    resolve_templates,
)

__all__ = ["TemplateResolver", "TemplateValidationError", "resolve_templates"]

"""Variable reference resolution for pipeline definitions.

Resolves ``${NAME}`` references in command lines, working directories,
archive patterns and notification messages against an environment mapping.

Supports:
    - Plain references: ``${IMAGE_TAG}``
    - Defaults: ``${REGISTRY:-docker.io}``
    - Filter functions: ``${BRANCH | lower}``
    - Escapes: ``$${NAME}`` renders a literal ``${NAME}``

Unknown names without a default are left untouched so the shell can still
expand them from the process environment. The resolver never evaluates code.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Mapping

logger = logging.getLogger("pipewright.pipeline.templates")

# Matches $${...} (escape) or ${ expression }
_REFERENCE_RE = re.compile(r"\$(\$)?\{\s*([^{}]+?)\s*\}")

# Matches: NAME:-default
_DEFAULT_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_.]*)\s*:-(.*)$", re.DOTALL)

# Matches: expr | filter_name
_FILTER_RE = re.compile(r"^(.+?)\s*\|\s*([a-zA-Z_][a-zA-Z0-9_]*)$")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")

_BUILTIN_FILTERS: dict[str, Callable[[str], str]] = {
    "lower": str.lower,
    "upper": str.upper,
    "trim": str.strip,
}


class TemplateResolver:
    """Resolves ``${NAME}`` references against a mapping of variables.

    Usage::

        resolver = TemplateResolver({"IMAGE": "shop/api", "TAG": "1.4"})
        resolver.resolve("docker build -t ${IMAGE}:${TAG} .")
        # → "docker build -t shop/api:1.4 ."
    """

    def __init__(self, variables: Mapping[str, str] | None = None):
        self._variables: Mapping[str, str] = variables or {}

    def resolve(self, text: str) -> str:
        """Resolve every reference in ``text``."""
        # Fast path: no references
        if "${" not in text:
            return text

        def _replacer(m: re.Match) -> str:
            if m.group(1):
                return m.group(0)[1:]
            result = self.resolve_expr(m.group(2))
            if result is None:
                logger.debug("Unresolved reference left in place: %s", m.group(0))
                return m.group(0)
            return result

        return _REFERENCE_RE.sub(_replacer, text)

    def resolve_expr(self, expr: str) -> str | None:
        """Resolve a single expression (without ``${ }``). None if undefined."""
        filter_match = _FILTER_RE.match(expr)
        if filter_match:
            inner = self.resolve_expr(filter_match.group(1).strip())
            if inner is None:
                return None
            return self._apply_filter(filter_match.group(2), inner)

        default_match = _DEFAULT_RE.match(expr)
        if default_match:
            value = self._variables.get(default_match.group(1))
            # Shell semantics: ":-" also substitutes for empty values
            return value if value else default_match.group(2)

        if not _NAME_RE.match(expr):
            return None
        return self._variables.get(expr)

    def _apply_filter(self, filter_name: str, value: str) -> str:
        fn = _BUILTIN_FILTERS.get(filter_name)
        if fn is None:
            logger.warning("Unknown template filter: '%s'", filter_name)
            return value
        return fn(value)


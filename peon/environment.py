"""
Build environment evaluation.

Values may reference other variables with ``$NAME``. References are resolved
recursively; a missing variable evaluates to an empty string and a variable
that references itself, directly or not, raises EvaluationCycleError.
"""

from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional

from .models import EvaluationCycleError

VARIABLE_RE = re.compile(r"\$(\w+)")


class Environment:
    """Flat mapping of variable names to raw template strings."""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self.env: Dict[str, str] = dict(env or {})

    def __contains__(self, key: str) -> bool:
        return key in self.env

    def __getitem__(self, key: str) -> str:
        return self.env[key]

    def evaluate(self, value: str, path: Optional[List[str]] = None) -> str:
        """
        Substitute every ``$NAME`` in value.

        Args:
            value: Template string
            path: Variables currently being resolved, outermost first

        Raises:
            EvaluationCycleError: If a variable is reached again while it is
                still being resolved
        """
        path = path or []

        def substitute(match: "re.Match[str]") -> str:
            variable = match.group(1)
            if variable in path:
                raise EvaluationCycleError(path + [variable])
            return self.evaluate(self.env.get(variable) or "", path + [variable])

        return VARIABLE_RE.sub(substitute, value)

    def evaluate_all(self) -> Dict[str, str]:
        """Return a copy of the environment with every value evaluated."""
        return {key: self.evaluate(value, [key]) for key, value in self.env.items()}

"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Any, Dict, List

from ..errors import MissingVariableError


class EnvironmentInterpolator:
    """
    Interpolates environment variables into manifest values.

    Supports ``${VAR}``, ``$VAR``, ``${VAR:-default}``, ``${VAR-default}``,
    ``${VAR:?message}``, ``${VAR?message}``, ``${VAR:+value}`` and ``$$``.
    ``${VAR}`` and ``$VAR`` are required: an unset variable is an error.
    """
    # Group "escape": $$
    # Group "braced": VAR name inside ${...}
    # Group "op": one of :- - :? ? :+ +
    # Group "arg": default, message or alternative value
    # Group "bare": VAR name for $VAR
    PATTERN = re.compile(
        r"\$(?:(?P<escape>\$)"
        r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-?+])(?P<arg>[^}]*))?\}"
        r"|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))"
    )

    def __init__(self, context: Dict[str, str]):
        """
        :param context: The environment variables context.
        """
        self.context = context
        self.missing: List[str] = []
        self.messages: List[str] = []

    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates a single string.

        :raises MissingVariableError: If a required variable is not set.
        """
        interpolator = EnvironmentInterpolator(context)
        result = interpolator.substitute(template)
        interpolator.raise_for_missing()
        return result

    def substitute(self, template: str) -> str:
        """
        Interpolates ``template``, recording missing variables instead of raising.
        """
        def replace(match):
            if match.group("escape"):
                return "$"

            var_name = match.group("braced") or match.group("bare")
            op = match.group("op")
            arg = match.group("arg") or ""
            value = self.context.get(var_name)

            if op == ":-":
                return value if value else arg
            if op == "-":
                return value if value is not None else arg
            if op == ":+":
                return arg if value else ""
            if op == "+":
                return arg if value is not None else ""
            if op in (":?", "?"):
                unset = not value if op == ":?" else value is None
                if unset:
                    self._record(var_name, arg or f"Required variable {var_name} is not set")
                    return ""
                return value

            if value is None:
                self._record(var_name, f"Required variable {var_name} is not set")
                return ""
            return value

        return self.PATTERN.sub(replace, template)

    def substitute_tree(self, value: Any) -> Any:
        """
        Interpolates every string in a parsed YAML tree. Keys are left alone.
        """
        if isinstance(value, str):
            return self.substitute(value)
        if isinstance(value, dict):
            return {k: self.substitute_tree(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.substitute_tree(v) for v in value]
        return value

    def raise_for_missing(self) -> None:
        if self.missing:
            raise MissingVariableError(self.missing, self.messages)

    def _record(self, name: str, message: str) -> None:
        if name not in self.missing:
            self.missing.append(name)
            self.messages.append(message)

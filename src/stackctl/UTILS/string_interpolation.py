"""
Utilities for compose-style variable interpolation.
"""
import logging
import re
from typing import Dict, List, NamedTuple, Optional

from ..errors import InterpolationError

logger = logging.getLogger(__name__)

_PATTERN = re.compile(
    r"""
    \$(?:
        (?P<escaped>\$)
      | (?P<named>[_a-zA-Z][_a-zA-Z0-9]*)
      | \{(?P<braced>[_a-zA-Z][_a-zA-Z0-9]*)(?:(?P<modifier>:?[-+?])(?P<argument>[^}]*))?\}
      | (?P<invalid>\{[^}]*\}?)
    )
    """,
    re.VERBOSE,
)


def _check_format(match):
    argument = match.group("argument")
    if match.group("invalid") is not None or (argument and "${" in argument):
        text = match.group(0)
        raise InterpolationError(text, f"Invalid interpolation format: {text!r}")


class VariableReference(NamedTuple):
    """A single ``$VAR`` / ``${VAR...}`` occurrence in a template."""

    name: str
    modifier: Optional[str]
    argument: Optional[str]

    @property
    def default(self) -> Optional[str]:
        if self.modifier in ("-", ":-"):
            return self.argument
        return None


class EnvironmentInterpolator:
    """
    Interpolates variables the way docker compose does.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+alt},
    ${VAR+alt}, ${VAR:?err}, ${VAR?err} and $$ escapes.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates variables in the template string using the provided context.

        :param template: The string containing placeholders.
        :param context: The variables available for substitution.
        :return: The interpolated string.
        :raises InterpolationError: If a ``?`` reference names an unset variable
            or a reference is malformed.
        """
        def replace(match):
            if match.group("escaped"):
                return "$"
            _check_format(match)

            name = match.group("named") or match.group("braced")
            modifier = match.group("modifier")
            argument = match.group("argument") or ""
            value = context.get(name)

            if modifier == ":-":
                return value if value else argument
            if modifier == "-":
                return value if value is not None else argument
            if modifier == ":+":
                return argument if value else ""
            if modifier == "+":
                return argument if value is not None else ""
            if modifier == ":?":
                if not value:
                    raise InterpolationError(name, argument)
                return value
            if modifier == "?":
                if value is None:
                    raise InterpolationError(name, argument)
                return value

            if value is None:
                logger.warning("The %s variable is not set. Defaulting to a blank string.", name)
                return ""
            return value

        return _PATTERN.sub(replace, template)

    @staticmethod
    def references(template: str) -> List[VariableReference]:
        """
        Lists the variable references in a template, skipping ``$$`` escapes.
        """
        refs = []
        for match in _PATTERN.finditer(template):
            if match.group("escaped"):
                continue
            _check_format(match)
            refs.append(
                VariableReference(
                    name=match.group("named") or match.group("braced"),
                    modifier=match.group("modifier"),
                    argument=match.group("argument"),
                )
            )
        return refs

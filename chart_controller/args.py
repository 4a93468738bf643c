"""Library for building the helm installer command line.

The installer container receives its action and chart overrides as
arguments, in the same form accepted by `helm install`:

    install [--namespace NS] [--repo URL] [--version V] (--set k=v | --set-string k=v)...

Overrides are emitted in sorted key order so that the Job spec is stable
across reconciles and only changes when the chart changes.
"""

import logging
import re
from typing import Any

from .manifest import HelmChart, ACTION_DELETE, ACTION_INSTALL

__all__ = [
    "helm_args",
    "typed_value",
    "escape_commas",
    "format_value",
]

_LOGGER = logging.getLogger(__name__)

# A comma and the run of backslashes immediately before it
_COMMA_RE = re.compile(r"\\*,")

# Strings helm parses as a typed value rather than a string
_TYPED_STRINGS = {"true", "false", "null"}


def typed_value(value: Any) -> bool:
    """Return True if the value should be passed with --set instead of --set-string.

    Things that look like a number, boolean, or null keep their type, following
    helm's own typedVal parsing. Everything else is passed as a string so that
    helm does not coerce it.
    """
    if value is None or isinstance(value, (bool, int, float)):
        return True
    return str(value).lower() in _TYPED_STRINGS


def format_value(value: Any) -> str:
    """Return the command line representation of a scalar override."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _escape_comma(match: re.Match[str]) -> str:
    """Escape a comma preceded by an even number of backslashes.

    The match is a run of backslashes followed by a comma. An odd number of
    backslashes means the comma is already escaped.
    """
    text = match.group(0)
    backslashes = len(text) - 1
    if backslashes % 2 == 0:
        return "\\" + text
    return text


def escape_commas(value: str) -> str:
    """Escape unescaped commas so helm does not split the value into a list."""
    return _COMMA_RE.sub(_escape_comma, value)


def helm_args(chart: HelmChart) -> list[str]:
    """Return the installer arguments for the chart."""
    if chart.deleting:
        return [ACTION_DELETE]

    args = [ACTION_INSTALL]
    if chart.target_namespace:
        args.extend(["--namespace", chart.target_namespace])
    if chart.repo:
        args.extend(["--repo", chart.repo])
    if chart.version:
        args.extend(["--version", chart.version])

    overrides = chart.set_values or {}
    for key in sorted(overrides):
        value = overrides[key]
        if typed_value(value):
            args.extend(["--set", f"{key}={format_value(value)}"])
        else:
            args.extend(["--set-string", f"{key}={escape_commas(str(value))}"])
    _LOGGER.debug("Installer args for %s: %s", chart.namespaced_name, args)
    return args

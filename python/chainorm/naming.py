"""Naming helpers for table and column names derived from class names."""

from __future__ import annotations

import re

_CAMEL_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])|([a-z\d])([A-Z])")
_SIBILANT = ("s", "x", "z", "ch", "sh")
_VOWELS = "aeiou"


def underscore(name: str) -> str:
    """Convert a CamelCase class name to snake_case.

    Example:
        >>> underscore("UserAddress")
        'user_address'
        >>> underscore("HTTPRequest")
        'http_request'
    """
    name = _CAMEL_BOUNDARY.sub(lambda m: "_".join(g for g in m.groups() if g), name)
    return name.replace("-", "_").lower()


def pluralize(word: str) -> str:
    """Return the English plural of a snake_case word.

    Only the last segment is inflected, so ``user_address`` becomes
    ``user_addresses``.

    Example:
        >>> pluralize("country")
        'countries'
        >>> pluralize("user_address")
        'user_addresses'
    """
    if not word:
        return word
    if word.endswith("y") and word[-2:-1] not in _VOWELS:
        return word[:-1] + "ies"
    if word.endswith(_SIBILANT):
        return word + "es"
    return word + "s"


def singularize(word: str) -> str:
    """Undo ``pluralize`` for the regular cases it produces."""
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    for suffix in _SIBILANT:
        if word.endswith(suffix + "es"):
            return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word

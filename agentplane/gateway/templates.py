"""Template Engine: restricted substitution for mock responses and HTTP calls.

Templates are arbitrary JSON values. Strings may contain ``{{expr}}`` blocks:

    {{args.city}}            call argument (dotted paths walk nested objects)
    {{now}}                  ISO-8601 UTC timestamp with milliseconds
    {{timestamp}}            epoch milliseconds
    {{uuid()}}               random UUID4
    {{random_int(1, 6)}}     inclusive random integer
    {{random_float(0, 1)}}   random float in [min, max)
    {{credential.API_KEY}}   only when credentials are supplied

A string that is exactly one block evaluates to the native value; blocks
embedded in a larger string are stringified. Nothing is ever executed:
unknown expressions are echoed back as their own text, or raise
``TemplateError`` when the engine is strict.
"""

from __future__ import annotations

import random
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import orjson

from agentplane.exceptions import TemplateError

_FULL_MATCH = re.compile(r"\{\{([^{}]+)\}\}")
_EMBEDDED = re.compile(r"\{\{([^}]+)\}\}")
_UUID_CALL = re.compile(r"^uuid\(\s*\)$")
_NUMBER = r"(-?\d+(?:\.\d+)?)"
_RANDOM_INT = re.compile(r"^random_int\(\s*(-?\d+)\s*,\s*(-?\d+)\s*\)$")
_RANDOM_FLOAT = re.compile(rf"^random_float\(\s*{_NUMBER}\s*,\s*{_NUMBER}\s*\)$")


def iso_now() -> str:
    """``2024-05-01T12:00:00.000Z``"""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def epoch_ms() -> int:
    return int(time.time() * 1000)


def stringify(value: Any) -> str:
    """How a value appears when embedded in a larger string."""
    if value is None:
        return ""
    if isinstance(value, (dict, list, bool)):
        return orjson.dumps(value).decode()
    return str(value)


class _Unresolved(Exception):
    pass


class TemplateEngine:
    def __init__(
        self,
        strict: bool = False,
        rng: random.Random | None = None,
        clock: Callable[[], str] = iso_now,
        epoch: Callable[[], int] = epoch_ms,
    ) -> None:
        self.strict = strict
        self._rng = rng or random.Random()
        self._clock = clock
        self._epoch = epoch

    def render(
        self,
        template: Any,
        args: Mapping[str, Any] | None = None,
        credentials: Mapping[str, str] | None = None,
    ) -> Any:
        args = args or {}
        if isinstance(template, str):
            return self._render_string(template, args, credentials)
        if isinstance(template, list):
            return [self.render(item, args, credentials) for item in template]
        if isinstance(template, dict):
            return {k: self.render(v, args, credentials) for k, v in template.items()}
        return template

    def _render_string(
        self, text: str, args: Mapping[str, Any], credentials: Mapping[str, str] | None,
    ) -> Any:
        full = _FULL_MATCH.fullmatch(text)
        if full:
            return self.evaluate(full.group(1), args, credentials)
        return _EMBEDDED.sub(
            lambda m: stringify(self.evaluate(m.group(1), args, credentials)), text,
        )

    def evaluate(
        self,
        expr: str,
        args: Mapping[str, Any] | None = None,
        credentials: Mapping[str, str] | None = None,
    ) -> Any:
        """Evaluate one expression (the text between the braces)."""
        expr = expr.strip()
        try:
            return self._evaluate(expr, args or {}, credentials)
        except _Unresolved:
            if self.strict:
                raise TemplateError(f"Unknown template expression: {expr}") from None
            return expr

    def _evaluate(
        self, expr: str, args: Mapping[str, Any], credentials: Mapping[str, str] | None,
    ) -> Any:
        if expr.startswith("args."):
            return _lookup(args, expr[5:])
        if credentials is not None and expr.startswith("credential."):
            return credentials.get(expr[11:], "")
        if expr == "now":
            return self._clock()
        if expr == "timestamp":
            return self._epoch()
        if _UUID_CALL.match(expr):
            return str(uuid.uuid4())

        m = _RANDOM_INT.match(expr)
        if m:
            low, high = int(m.group(1)), int(m.group(2))
            if low > high:
                raise _Unresolved
            return self._rng.randint(low, high)

        m = _RANDOM_FLOAT.match(expr)
        if m:
            low, high = float(m.group(1)), float(m.group(2))
            if low > high:
                raise _Unresolved
            return low + self._rng.random() * (high - low)

        raise _Unresolved


def _lookup(args: Mapping[str, Any], path: str) -> Any:
    """Walk ``a.b.c`` through nested mappings. Missing keys give None."""
    value: Any = args
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
        if value is None:
            return None
    return value

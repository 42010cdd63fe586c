"""Lexical grammars and value mapping for the XSD primitive datatypes.

Each :class:`Primitive` knows how to turn a whitespace-normalized lexical
string into

* a *value* suitable for a JSON-like tree (``int``/``Decimal``/``float``/
  ``bool``/``str``), and
* an ordering/equality *key* used by enumeration, bound facets and identity
  constraints (for instance date/time values compare on a UTC timeline even
  though their decoded value stays the lexical string).

The module also translates XSD regular expressions to the dialect of the
:mod:`regex` package (character class subtraction, ``\\i``/``\\c`` name
escapes, Unicode block escapes) so ``pattern`` facets behave as specified.
"""

from __future__ import annotations

import base64
import binascii
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

import regex

from .qnames import QName, resolve_prefixed

Namespaces = Mapping[Optional[str], str]

WHITESPACE_ORDER = {"preserve": 0, "replace": 1, "collapse": 2}

_REPLACE_RE = re.compile(r"[\t\n\r]")
_COLLAPSE_RE = re.compile(r"[ \t\n\r]+")


def normalize_whitespace(text: str, mode: str) -> str:
    if mode == "replace":
        return _REPLACE_RE.sub(" ", text)
    if mode == "collapse":
        return _COLLAPSE_RE.sub(" ", text).strip(" ")
    return text


# ---------------------------------------------------------------------------
# Lexical patterns
# ---------------------------------------------------------------------------

_TZ = r"(Z|[+-](?:(?:0\d|1[0-3]):[0-5]\d|14:00))?"
_YEAR = r"(-?(?:[1-9]\d{3,}|0\d{3}))"
_MONTH = r"(0[1-9]|1[0-2])"
_DAY = r"(0[1-9]|[12]\d|3[01])"
_TIME = r"(?:([01]\d|2[0-3]):([0-5]\d):([0-5]\d(?:\.\d+)?)|(24):(00):(00(?:\.0+)?))"

DECIMAL_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)")
FLOAT_RE = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[Ee][+-]?\d+)?|[+-]?INF|NaN")
DURATION_RE = re.compile(
    r"(-)?P(?:(\d+)Y)?(?:(\d+)M)?(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?"
)
DATETIME_RE = re.compile(_YEAR + "-" + _MONTH + "-" + _DAY + "T" + _TIME + _TZ)
DATE_RE = re.compile(_YEAR + "-" + _MONTH + "-" + _DAY + _TZ)
TIME_RE = re.compile(_TIME + _TZ)
GYEARMONTH_RE = re.compile(_YEAR + "-" + _MONTH + _TZ)
GYEAR_RE = re.compile(_YEAR + _TZ)
GMONTHDAY_RE = re.compile("--" + _MONTH + "-" + _DAY + _TZ)
GDAY_RE = re.compile("---" + _DAY + _TZ)
GMONTH_RE = re.compile("--" + _MONTH + _TZ)
HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})*")
BASE64_RE = re.compile(r"[A-Za-z0-9+/= ]*")

# ---------------------------------------------------------------------------
# Value mapping helpers
# ---------------------------------------------------------------------------


class _NaN:
    """Key for NaN: equal to itself (enumeration) and unordered."""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _NaN)

    def __hash__(self) -> int:
        return hash("NaN")

    def __repr__(self) -> str:
        return "NaN"


NAN_KEY = _NaN()


def _days_from_civil(year: int, month: int, day: int) -> int:
    """Days since 1970-01-01 in the proleptic Gregorian calendar (any year)."""
    year -= month <= 2
    era = (year if year >= 0 else year - 399) // 400
    yoe = year - era * 400
    doy = (153 * (month + (-3 if month > 2 else 9)) + 2) // 5 + day - 1
    doe = yoe * 365 + yoe // 4 - yoe // 100 + doy
    return era * 146097 + doe - 719468


def _is_leap(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


_MONTH_DAYS = (31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)


def _check_day(year: Optional[int], month: int, day: int) -> None:
    if day > _MONTH_DAYS[month - 1]:
        raise ValueError(f"day {day} out of range for month {month}")
    if year is not None and month == 2 and day == 29 and not _is_leap(year):
        raise ValueError(f"{year} is not a leap year")


def _tz_minutes(tz: Optional[str]) -> int:
    if not tz or tz == "Z":
        return 0
    sign = -1 if tz[0] == "-" else 1
    hours, minutes = tz[1:].split(":")
    return sign * (int(hours) * 60 + int(minutes))


def _time_seconds(groups: Tuple[Optional[str], ...]) -> Decimal:
    hour, minute, second, h24, m24, s24 = groups
    if h24 is not None:
        return Decimal(86400)
    return Decimal(int(hour) * 3600 + int(minute) * 60) + Decimal(second)


def _temporal(pattern: re.Pattern, kind: str) -> Callable[[str, Namespaces], Tuple[str, Any]]:
    def parse(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
        match = pattern.fullmatch(text)
        if match is None:
            raise ValueError(f"invalid {kind} '{text}'")
        groups = match.groups()
        tz = groups[-1]
        year, month, day = 1972, 1, 1
        seconds = Decimal(0)
        if kind == "dateTime":
            year, month, day = int(groups[0]), int(groups[1]), int(groups[2])
            _check_day(year, month, day)
            seconds = _time_seconds(groups[3:9])
        elif kind == "date":
            year, month, day = int(groups[0]), int(groups[1]), int(groups[2])
            _check_day(year, month, day)
        elif kind == "time":
            seconds = _time_seconds(groups[0:6])
        elif kind == "gYearMonth":
            year, month = int(groups[0]), int(groups[1])
        elif kind == "gYear":
            year = int(groups[0])
        elif kind == "gMonthDay":
            month, day = int(groups[0]), int(groups[1])
            _check_day(None, month, day)
        elif kind == "gDay":
            day = int(groups[0])
        elif kind == "gMonth":
            month = int(groups[0])
        if year == 0:
            raise ValueError("year 0000 is not allowed")
        total = (
            Decimal(_days_from_civil(year, month, day) * 86400)
            + seconds
            - Decimal(_tz_minutes(tz) * 60)
        )
        return text, total

    return parse


def _parse_duration(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
    match = DURATION_RE.fullmatch(text)
    if match is None or text.endswith(("P", "T")):
        raise ValueError(f"invalid duration '{text}'")
    sign, years, months, days, hours, minutes, seconds = match.groups()
    if not any((years, months, days, hours, minutes, seconds)):
        raise ValueError(f"invalid duration '{text}'")
    factor = -1 if sign else 1
    total_months = factor * (int(years or 0) * 12 + int(months or 0))
    total_seconds = factor * (
        Decimal(int(days or 0) * 86400 + int(hours or 0) * 3600 + int(minutes or 0) * 60)
        + Decimal(seconds or 0)
    )
    return text, (total_months, total_seconds)


def _parse_string(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
    return text, text


def _parse_boolean(text: str, namespaces: Namespaces) -> Tuple[bool, Any]:
    if text in ("true", "1"):
        return True, True
    if text in ("false", "0"):
        return False, False
    raise ValueError(f"invalid boolean '{text}'")


def _parse_decimal(text: str, namespaces: Namespaces) -> Tuple[Decimal, Any]:
    if not DECIMAL_RE.fullmatch(text):
        raise ValueError(f"invalid decimal '{text}'")
    try:
        value = Decimal(text)
    except InvalidOperation as exc:
        raise ValueError(f"invalid decimal '{text}'") from exc
    return value, value


def _parse_float(text: str, namespaces: Namespaces) -> Tuple[float, Any]:
    if not FLOAT_RE.fullmatch(text):
        raise ValueError(f"invalid floating point value '{text}'")
    value = float(text.replace("INF", "inf"))
    if math.isnan(value):
        return value, NAN_KEY
    return value, value


def _parse_hex(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
    if not HEX_RE.fullmatch(text):
        raise ValueError(f"invalid hexBinary '{text}'")
    return text, bytes.fromhex(text)


def _parse_base64(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
    if not BASE64_RE.fullmatch(text):
        raise ValueError(f"invalid base64Binary '{text}'")
    try:
        data = base64.b64decode(text.replace(" ", ""), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64Binary '{text}'") from exc
    return text, data


def _parse_qname(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
    if not regex.fullmatch(_NCNAME + "(?::" + _NCNAME + ")?", text):
        raise ValueError(f"invalid QName '{text}'")
    try:
        name = resolve_prefixed(text, namespaces)
    except KeyError as exc:
        raise ValueError(f"prefix '{exc.args[0]}' of '{text}' is not bound") from exc
    return name.clark, name


def _parse_uri(text: str, namespaces: Namespaces) -> Tuple[str, Any]:
    if any(ch in text for ch in "<>\"{}|\\^`") or text.count("#") > 1:
        raise ValueError(f"invalid anyURI '{text}'")
    return text, text


# ---------------------------------------------------------------------------
# Primitive registry
# ---------------------------------------------------------------------------

STRING_FACETS = frozenset(
    {"length", "minLength", "maxLength", "pattern", "enumeration", "whiteSpace"}
)
ORDERED_FACETS = frozenset(
    {
        "pattern",
        "enumeration",
        "whiteSpace",
        "maxInclusive",
        "maxExclusive",
        "minInclusive",
        "minExclusive",
    }
)
DECIMAL_FACETS = ORDERED_FACETS | {"totalDigits", "fractionDigits"}
LIST_FACETS = STRING_FACETS
UNION_FACETS = frozenset({"pattern", "enumeration"})


@dataclass(frozen=True)
class Primitive:
    name: str
    parse: Callable[[str, Namespaces], Tuple[Any, Any]]
    facets: FrozenSet[str]
    length: Optional[Callable[[str, Any], int]] = None

    def measure(self, lexical: str, key: Any) -> int:
        if self.length is not None:
            return self.length(lexical, key)
        return len(lexical)


def _byte_length(lexical: str, key: Any) -> int:
    return len(key)


PRIMITIVES: Dict[str, Primitive] = {
    p.name: p
    for p in (
        Primitive("anySimpleType", _parse_string, STRING_FACETS),
        Primitive("string", _parse_string, STRING_FACETS),
        Primitive("boolean", _parse_boolean, frozenset({"pattern", "whiteSpace"})),
        Primitive("decimal", _parse_decimal, DECIMAL_FACETS),
        Primitive("float", _parse_float, ORDERED_FACETS),
        Primitive("double", _parse_float, ORDERED_FACETS),
        Primitive("duration", _parse_duration, ORDERED_FACETS),
        Primitive("dateTime", _temporal(DATETIME_RE, "dateTime"), ORDERED_FACETS),
        Primitive("time", _temporal(TIME_RE, "time"), ORDERED_FACETS),
        Primitive("date", _temporal(DATE_RE, "date"), ORDERED_FACETS),
        Primitive("gYearMonth", _temporal(GYEARMONTH_RE, "gYearMonth"), ORDERED_FACETS),
        Primitive("gYear", _temporal(GYEAR_RE, "gYear"), ORDERED_FACETS),
        Primitive("gMonthDay", _temporal(GMONTHDAY_RE, "gMonthDay"), ORDERED_FACETS),
        Primitive("gDay", _temporal(GDAY_RE, "gDay"), ORDERED_FACETS),
        Primitive("gMonth", _temporal(GMONTH_RE, "gMonth"), ORDERED_FACETS),
        Primitive("hexBinary", _parse_hex, STRING_FACETS, _byte_length),
        Primitive("base64Binary", _parse_base64, STRING_FACETS, _byte_length),
        Primitive("anyURI", _parse_uri, STRING_FACETS),
        Primitive("QName", _parse_qname, STRING_FACETS),
        Primitive("NOTATION", _parse_qname, STRING_FACETS),
    )
}


def value_to_lexical(primitive: str, value: Any) -> str:
    """Inverse of the primitive value mapping for values produced by ``parse``.

    QName/NOTATION values (Clark strings) need a namespace context and are
    rendered by the codec instead.
    """
    if primitive == "boolean":
        if not isinstance(value, bool):
            raise ValueError(f"expected a boolean, got {value!r}")
        return "true" if value else "false"
    if primitive == "decimal":
        if isinstance(value, bool) or not isinstance(value, (int, Decimal, float)):
            raise ValueError(f"expected a number, got {value!r}")
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValueError(f"{value!r} is not a decimal")
            value = Decimal(repr(value))
        return format(value, "f")
    if primitive in ("float", "double"):
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise ValueError(f"expected a number, got {value!r}")
        number = float(value)
        if math.isnan(number):
            return "NaN"
        if math.isinf(number):
            return "INF" if number > 0 else "-INF"
        return repr(number)
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# XSD regular expressions
# ---------------------------------------------------------------------------

_NAME_START = (
    ":A-Z_a-zÀ-ÖØ-öø-˿Ͱ-ͽͿ-῿"
    "‌-‍⁰-↏Ⰰ-⿯、-퟿豈-﷏ﷰ-�"
)
_NAME_CHAR = _NAME_START + r"\-.0-9·̀-ͯ‿-⁀"
_NCNAME = "[" + _NAME_START.replace(":", "", 1) + "][" + _NAME_CHAR.replace(":", "", 1) + "]*"

_ESCAPES = {
    "i": "[" + _NAME_START + "]",
    "I": "[^" + _NAME_START + "]",
    "c": "[" + _NAME_CHAR + "]",
    "C": "[^" + _NAME_CHAR + "]",
    "d": r"\p{Nd}",
    "D": r"\P{Nd}",
    "s": r"[ \t\n\r]",
    "S": r"[^ \t\n\r]",
    "w": r"[^\p{P}\p{Z}\p{C}]",
    "W": r"[\p{P}\p{Z}\p{C}]",
}
_SINGLE_ESCAPES = set("nrt\\|.?*+(){}-[]^")


def translate_pattern(pattern: str) -> str:
    """Translate an XSD regular expression into :mod:`regex` V1 syntax.

    Raises:
        ValueError: On syntax the XSD dialect does not allow.
    """
    out = []
    depth = 0
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "\\":
            if i + 1 >= n:
                raise ValueError("pattern ends with a lone backslash")
            nxt = pattern[i + 1]
            if nxt in _ESCAPES:
                out.append(_ESCAPES[nxt])
                i += 2
                continue
            if nxt in "pP":
                close = pattern.find("}", i)
                if i + 2 >= n or pattern[i + 2] != "{" or close < 0:
                    raise ValueError(f"malformed category escape at {i}")
                name = pattern[i + 3 : close]
                if name.startswith("Is"):
                    name = "Block=" + name[2:]
                out.append(f"\\{nxt}{{{name}}}")
                i = close + 1
                continue
            if nxt in _SINGLE_ESCAPES:
                out.append("\\" + nxt)
                i += 2
                continue
            raise ValueError(f"unknown escape '\\{nxt}'")
        if depth == 0:
            if ch == "[":
                depth = 1
                out.append("[")
                if pattern.startswith("^", i + 1):
                    out.append("^")
                    i += 1
            elif ch == ".":
                out.append(r"[^\n\r]")
            elif ch in "^$":
                out.append("\\" + ch)
            elif ch == "]":
                raise ValueError("unbalanced ']'")
            else:
                out.append(ch)
            i += 1
            continue
        # inside a character class
        if ch == "-" and pattern.startswith("-[", i):
            out.append("--[")
            depth += 1
            i += 2
            if pattern.startswith("^", i):
                out.append("^")
                i += 1
            continue
        if ch == "]":
            depth -= 1
            out.append("]")
        elif ch == "[":
            raise ValueError("'[' must be escaped inside a character class")
        elif ch in "&|~^":
            out.append("\\" + ch)
        else:
            out.append(ch)
        i += 1
    if depth:
        raise ValueError("unterminated character class")
    return "".join(out)


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str):
    """Compile an XSD pattern; matching must use ``fullmatch``."""
    try:
        return regex.compile(translate_pattern(pattern), flags=regex.V1)
    except regex.error as exc:
        raise ValueError(f"invalid pattern '{pattern}': {exc}") from exc

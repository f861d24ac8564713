"""
Compile column predicates into an LDAP search filter.

Callers describe what they want as a set of :py:class:`Predicate` objects
(``department = "Sales"``, ``created >= 2023-01-01``, ``disabled = True``,
``cn IN ("a", "b")``) plus the object-class filter for the kind of entry
they are listing.  :py:func:`compile_filter` turns that into a single,
fully parenthesized LDAP filter string with everything ANDed together.
"""

import datetime
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import pytz
from ldap_filter import Filter

#: Predicate key whose value replaces every other predicate
RAW_FILTER_KEY = "filter"
#: Predicate key for the "account is disabled" flag
DISABLED_KEY = "disabled"

#: ``yyyyMMddHHmmss.fffZ``; the millisecond part is appended by hand
FILTER_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
#: ``userAccountControl`` has bit 2 (ACCOUNTDISABLE) set
DISABLED_USER_FILTER = "(userAccountControl:1.2.840.113556.1.4.803:=2)"

OPERATORS = ("=", ">", ">=", "<", "<=", "<>")

#: Column names whose LDAP display name is not simply their camel-cased form.
#: https://docs.microsoft.com/en-us/windows/win32/adschema/attributes-all
LDAP_DISPLAY_NAMES: dict[str, str] = {
    "surname": "sn",
    "created": "whenCreated",
    "changed": "whenChanged",
}

# LDAP has no strict inequality, so > and < become >= and <=
WIDENED_OPERATORS = {">": ">=", "<": "<="}


@dataclass(frozen=True)
class Predicate:
    """
    One column qualifier: ``key operator value``.

    ``value`` is a string, a :py:class:`datetime.datetime`, a bool, or a
    list/tuple of strings meaning "any of these".
    """

    key: str
    operator: str
    value: Any

    def __post_init__(self) -> None:
        if self.operator not in OPERATORS:
            msg = f'Unknown predicate operator: "{self.operator}"'
            raise ValueError(msg)


def to_lower_camel(name: str) -> str:
    """
    ``sam_account_name`` -> ``samAccountName``.  Names that are already
    camel case keep their inner capitals.
    """
    words = [w for w in re.split(r"[_\-\s]+", name) if w]
    if not words:
        return name
    first, *rest = words
    return first[0].lower() + first[1:] + "".join(w[0].upper() + w[1:] for w in rest)


def attribute_name(column: str) -> str:
    """Map a column name to the LDAP attribute it queries."""
    return LDAP_DISPLAY_NAMES.get(column, to_lower_camel(column))


def format_timestamp(value: datetime.datetime) -> str:
    """
    Format ``value`` as an LDAP filter timestamp, ``yyyyMMddHHmmss.fffZ``.
    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = pytz.utc.localize(value)
    value = value.astimezone(pytz.utc)
    return f"{value.strftime(FILTER_TIMESTAMP_FORMAT)}.{value.microsecond // 1000:03d}Z"


def wrap(value: str) -> str:
    """Make sure a raw filter starts with ``(`` and ends with ``)``."""
    if not value.startswith("("):
        value = f"({value}"
    if not value.endswith(")"):
        value = f"{value})"
    return value


def _comparison(attr: str, operator: str, value: str) -> str:
    operator = WIDENED_OPERATORS.get(operator, operator)
    if operator == ">=":
        return Filter.attribute(attr).gte(value).to_string()
    if operator == "<=":
        return Filter.attribute(attr).lte(value).to_string()
    clause = Filter.attribute(attr).equal_to(value)
    if operator == "<>":
        return Filter.NOT(clause).to_string()
    return clause.to_string()


def _disabled_clause(predicate: Predicate) -> str:
    negate = (predicate.operator == "<>") != (predicate.value is False)
    if negate:
        return f"(!{DISABLED_USER_FILTER})"
    return DISABLED_USER_FILTER


def render(predicate: Predicate) -> str:
    """
    Render a single predicate as a filter clause.

    Returns:
        The clause, or ``""`` if the predicate selects nothing to filter on
        (an empty string or an empty list).

    """
    if predicate.key == DISABLED_KEY:
        return _disabled_clause(predicate)
    attr = attribute_name(predicate.key)
    value = predicate.value
    if isinstance(value, datetime.datetime):
        return _comparison(attr, predicate.operator, format_timestamp(value))
    if isinstance(value, bool):
        return _comparison(attr, predicate.operator, "TRUE" if value else "FALSE")
    if isinstance(value, (list, tuple)):
        values = [str(v) for v in value if v != ""]
        if not values:
            return ""
        clause = Filter.OR([Filter.attribute(attr).equal_to(v) for v in values])
        if predicate.operator == "<>":
            clause = Filter.NOT(clause)
        return clause.to_string()
    if value is None or value == "":
        return ""
    return _comparison(attr, predicate.operator, str(value))


def compile_filter(predicates: Iterable[Predicate], object_filter: str) -> str:
    """
    Combine ``predicates`` and ``object_filter`` into one LDAP filter.

    If one of the predicates is the raw ``filter`` key, its value is used
    verbatim (wrapped in parentheses if needed) and every other predicate is
    ignored.  The result is always ``(&<object_filter>...)``.

    Args:
        predicates: the column predicates for this query
        object_filter: the object-class filter for the entity being listed,
            e.g. ``(objectClass=user)``

    Returns:
        The compiled filter string.

    """
    predicates = list(predicates)
    raw = [p for p in predicates if p.key == RAW_FILTER_KEY and p.value]
    if raw:
        clauses = [wrap(str(raw[0].value))]
    else:
        clauses = [render(p) for p in predicates if p.key != RAW_FILTER_KEY]
    return f"(&{wrap(object_filter)}{''.join(clauses)})"

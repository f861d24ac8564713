"""
Entity tables: users, groups and organizational units.

Each :py:class:`Table` knows the object-class filter for its kind of entry,
which columns may be used as predicates, and how to turn a
:py:class:`~ldapquery.search.DirectoryEntry` into a typed row.
"""

import datetime
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ldapquery import ldap

from .decoders import (
    account_disabled,
    decode_guid,
    decode_sid,
    is_zero_time,
    organizational_unit,
    parse_timestamp,
)
from .exceptions import NotFoundError
from .filters import RAW_FILTER_KEY, Predicate, compile_filter
from .search import DirectoryEntry, PagedSearch, parse_scope
from .session import SessionManager
from .typing import CancelCheck, DecodedAttributes, RawAttributes

logger = logging.getLogger("django-ldapquery")


def _timestamp(entry: DirectoryEntry, name: str) -> datetime.datetime | None:
    value = parse_timestamp(entry.get_value(name))
    return None if is_zero_time(value) else value


def _sid(entry: DirectoryEntry) -> str:
    raw = entry.get_raw_value("objectSid")
    return decode_sid(raw) if raw else ""


def _guid(entry: DirectoryEntry) -> str:
    raw = entry.get_raw_value("objectGUID")
    return decode_guid(raw) if raw else ""


@dataclass
class Row:
    """
    Fields every row has.  ``attributes`` holds every attribute the server
    returned, decoded, including the ones that also have their own field;
    ``raw`` holds the same attributes as the undecoded bytes.
    """

    #: Distinguished name of the entry
    dn: str
    #: The base DN that was searched
    base_dn: str
    #: The filter the search actually used
    filter: str
    attributes: DecodedAttributes = field(default_factory=dict)
    raw: RawAttributes = field(default_factory=dict)
    object_class: list[str] = field(default_factory=list)
    #: The LDAP server the row came from
    host_name: str = ""

    @classmethod
    def common(
        cls, entry: DirectoryEntry, base_dn: str, searchfilter: str, host_name: str
    ) -> dict[str, Any]:
        return {
            "dn": entry.dn,
            "base_dn": base_dn,
            "filter": searchfilter,
            "attributes": entry.decoded(),
            "raw": {name: list(values) for name, values in entry.attributes.items()},
            "object_class": entry.get_values("objectClass"),
            "host_name": host_name,
        }


@dataclass
class UserRow(Row):
    cn: str = ""
    display_name: str = ""
    given_name: str = ""
    surname: str = ""
    mail: str = ""
    department: str = ""
    title: str = ""
    description: str = ""
    sam_account_name: str = ""
    user_principal_name: str = ""
    object_sid: str = ""
    object_guid: str = ""
    created: datetime.datetime | None = None
    changed: datetime.datetime | None = None
    disabled: bool = False
    ou: str = ""
    member_of: list[str] = field(default_factory=list)

    @classmethod
    def from_entry(
        cls, entry: DirectoryEntry, base_dn: str, searchfilter: str, host_name: str = ""
    ) -> "UserRow":
        return cls(
            **cls.common(entry, base_dn, searchfilter, host_name),
            cn=entry.get_value("cn"),
            display_name=entry.get_value("displayName"),
            given_name=entry.get_value("givenName"),
            surname=entry.get_value("sn"),
            mail=entry.get_value("mail"),
            department=entry.get_value("department"),
            title=entry.get_value("title"),
            description=entry.get_value("description"),
            sam_account_name=entry.get_value("sAMAccountName"),
            user_principal_name=entry.get_value("userPrincipalName"),
            object_sid=_sid(entry),
            object_guid=_guid(entry),
            created=_timestamp(entry, "whenCreated"),
            changed=_timestamp(entry, "whenChanged"),
            disabled=account_disabled(entry.get_values("userAccountControl")),
            ou=organizational_unit(entry.dn),
            member_of=entry.get_values("memberOf"),
        )


@dataclass
class GroupRow(Row):
    cn: str = ""
    description: str = ""
    sam_account_name: str = ""
    title: str = ""
    object_sid: str = ""
    created: datetime.datetime | None = None
    changed: datetime.datetime | None = None
    ou: str = ""
    member_of: list[str] = field(default_factory=list)

    @classmethod
    def from_entry(
        cls, entry: DirectoryEntry, base_dn: str, searchfilter: str, host_name: str = ""
    ) -> "GroupRow":
        cn = entry.get_value("cn")
        return cls(
            **cls.common(entry, base_dn, searchfilter, host_name),
            cn=cn,
            description=entry.get_value("description"),
            sam_account_name=entry.get_value("sAMAccountName"),
            title=entry.get_value("title") or cn,
            object_sid=_sid(entry),
            created=_timestamp(entry, "whenCreated"),
            changed=_timestamp(entry, "whenChanged"),
            ou=organizational_unit(entry.dn),
            member_of=entry.get_values("memberOf"),
        )


@dataclass
class OrganizationalUnitRow(Row):
    ou: str = ""
    description: str = ""
    managed_by: str = ""
    when_created: datetime.datetime | None = None
    when_changed: datetime.datetime | None = None
    title: str = ""

    @classmethod
    def from_entry(
        cls, entry: DirectoryEntry, base_dn: str, searchfilter: str, host_name: str = ""
    ) -> "OrganizationalUnitRow":
        ou = entry.get_value("ou")
        return cls(
            **cls.common(entry, base_dn, searchfilter, host_name),
            ou=ou,
            description=entry.get_value("description"),
            managed_by=entry.get_value("managedBy"),
            when_created=_timestamp(entry, "whenCreated"),
            when_changed=_timestamp(entry, "whenChanged"),
            title=ou,
        )


class Table:
    """
    A queryable kind of directory entry.

    Args:
        name: table name, e.g. ``ldap_user``
        object_filter: filter selecting this kind of entry
        row_class: row type built from each entry
        key_columns: columns that may appear in predicates

    """

    class InvalidColumn(Exception):
        """Raised when a predicate names a column the table cannot filter on."""

    #: Filter used when fetching a single entry by DN
    GET_FILTER: ClassVar[str] = "(objectClass=*)"

    def __init__(
        self,
        name: str,
        object_filter: str,
        row_class: type[Row],
        key_columns: Iterable[str],
    ) -> None:
        self.name = name
        self.object_filter = object_filter
        self.row_class = row_class
        self.key_columns = frozenset(key_columns) | {RAW_FILTER_KEY}

    def __repr__(self) -> str:
        return f"<Table {self.name} {self.object_filter}>"

    def _check_columns(self, predicates: list[Predicate]) -> None:
        for predicate in predicates:
            if predicate.key not in self.key_columns:
                msg = f'"{predicate.key}" is not a filterable column of {self.name}'
                raise self.InvalidColumn(msg)

    def compile(self, predicates: Iterable[Predicate] = ()) -> str:
        predicates = list(predicates)
        self._check_columns(predicates)
        return compile_filter(predicates, self.object_filter)

    def rows(
        self,
        sessions: SessionManager,
        predicates: Iterable[Predicate] = (),
        limit: int | None = None,
        cancelled: CancelCheck | None = None,
        basedn: str | None = None,
        scope: str = "sub",
    ) -> Iterator[Row]:
        """
        Search under the base DN and yield one row per matching entry.

        The filter and the scope are checked before anything is sent to the
        server, so a bad column or scope name raises here rather than on the
        first iteration.

        Args:
            sessions: the session manager to search with

        Keyword Args:
            predicates: column predicates to filter by
            limit: stop after this many rows
            cancelled: checked after every row; return True to stop
            basedn: search under this DN instead of the configured one
            scope: ``base``, ``single`` or ``sub``

        Raises:
            Table.InvalidColumn: a predicate names a column we cannot filter on
            ValueError: ``scope`` is not one of the three scope names

        """
        config = sessions.config
        basedn = basedn or config.basedn
        searchfilter = self.compile(predicates)
        logger.debug(
            "ldapquery.tables.%s.rows basedn=%s scope=%s filter=%s",
            self.name,
            basedn,
            scope,
            searchfilter,
        )
        entries = PagedSearch(
            sessions,
            basedn,
            searchfilter,
            attributes=config.attributes,
            scope=parse_scope(scope),
            page_size=config.effective_page_size,
            limit=limit,
            cancelled=cancelled,
        )
        return (
            self.row_class.from_entry(  # type: ignore[attr-defined]
                entry, basedn, searchfilter, host_name=config.host_name
            )
            for entry in entries
        )

    def get(self, sessions: SessionManager, dn: str) -> Row | None:
        """
        Fetch the single entry at ``dn``.

        Returns:
            The row, or ``None`` if there is no such entry.

        """
        config = sessions.config
        entries = PagedSearch(
            sessions,
            dn,
            self.GET_FILTER,
            attributes=config.attributes,
            scope=ldap.SCOPE_BASE,  # type: ignore[attr-defined]
            limit=1,
        )
        try:
            for entry in entries:
                return self.row_class.from_entry(  # type: ignore[attr-defined]
                    entry, config.basedn, self.GET_FILTER, host_name=config.host_name
                )
        except NotFoundError:
            logger.debug("ldapquery.tables.%s.get dn=%s not found", self.name, dn)
        return None


USERS = Table(
    "ldap_user",
    "(objectClass=user)",
    UserRow,
    [
        "cn",
        "display_name",
        "given_name",
        "surname",
        "mail",
        "department",
        "title",
        "description",
        "sam_account_name",
        "user_principal_name",
        "object_sid",
        "created",
        "changed",
        "disabled",
    ],
)

GROUPS = Table(
    "ldap_group",
    "(objectClass=group)",
    GroupRow,
    ["cn", "ou", "object_sid", "sam_account_name", "description", "created", "changed"],
)

ORGANIZATIONAL_UNITS = Table(
    "ldap_organizational_unit",
    "(objectClass=organizationalUnit)",
    OrganizationalUnitRow,
    ["ou", "description", "when_created", "when_changed"],
)

TABLES: dict[str, Table] = {
    table.name: table for table in (USERS, GROUPS, ORGANIZATIONAL_UNITS)
}

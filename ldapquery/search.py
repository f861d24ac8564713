"""
Paged LDAP searches.

:py:class:`PagedSearch` drives the simple paged results control (RFC 2696)
across as many round trips as the server needs, handing entries to the
caller as each page arrives.  It stops when the server says there are no
more pages, when the caller's row limit is used up, or when the caller asks
it to cancel.
"""

import enum
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from ldap.controls import SimplePagedResultsControl

from ldapquery import ldap

from .decoders import decode_attributes, decode_values
from .session import SessionManager
from .typing import CancelCheck, DecodedAttributes, LDAPData, RawAttributes

logger = logging.getLogger("django-ldapquery")

#: Page size used when the caller does not ask for one
PAGE_SIZE = 1000

SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "single": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}


def parse_scope(name: str) -> int:
    """
    Map ``base``, ``single`` or ``sub`` to the python-ldap scope constant.

    Raises:
        ValueError: ``name`` is not one of the three scope names

    """
    try:
        return SCOPES[name]
    except KeyError as e:
        msg = "Scope must be base, single, or sub"
        raise ValueError(msg) from e


@dataclass
class DirectoryEntry:
    """
    One search result.

    ``attributes`` holds the values exactly as the server sent them, so that
    binary attributes (``objectSid``, ``objectGUID``) can still be decoded
    from their raw bytes.  Attribute lookups are case-insensitive, like LDAP
    attribute names.
    """

    dn: str
    attributes: RawAttributes = field(default_factory=dict)

    def _key(self, name: str) -> str | None:
        if name in self.attributes:
            return name
        lowered = name.lower()
        for key in self.attributes:
            if key.lower() == lowered:
                return key
        return None

    def get_raw_values(self, name: str) -> list[bytes]:
        key = self._key(name)
        return list(self.attributes[key]) if key is not None else []

    def get_raw_value(self, name: str) -> bytes:
        values = self.get_raw_values(name)
        return values[0] if values else b""

    def get_values(self, name: str) -> list[str]:
        """Return the decoded values of ``name``, or ``[]``."""
        key = self._key(name)
        if key is None:
            return []
        return decode_values(key, self.attributes[key])

    def get_value(self, name: str) -> str:
        """Return the first decoded value of ``name``, or ``""``."""
        values = self.get_values(name)
        return values[0] if values else ""

    def decoded(self) -> DecodedAttributes:
        return decode_attributes(self.attributes)


@dataclass
class PageCursor:
    """
    Where we are in a paged search: the server's opaque cookie and the page
    size we ask for.  An empty cookie after a page means there are no more.
    """

    size: int
    cookie: bytes = b""

    @property
    def has_more(self) -> bool:
        return bool(self.cookie)

    def control(self) -> SimplePagedResultsControl:
        return SimplePagedResultsControl(True, size=self.size, cookie=self.cookie)  # noqa: FBT003


class SearchState(enum.Enum):
    RUNNING = "running"
    DONE = "done"


def get_paged_controls(serverctrls) -> list[SimplePagedResultsControl]:
    """
    Pick the paged results controls out of the controls the server returned.
    They carry the cookie for the next request.
    """
    return [
        c
        for c in serverctrls or []
        if c.controlType == SimplePagedResultsControl.controlType
    ]


class PagedSearch:
    """
    A paged subtree (or base, or one-level) search.

    Iterating over a :py:class:`PagedSearch` yields :py:class:`DirectoryEntry`
    objects, fetching pages as needed.  :py:meth:`run` does the same but
    hands each entry to a sink.

    Args:
        sessions: where to get the connection from
        basedn: the DN to search under
        searchfilter: a compiled filter string

    Keyword Args:
        attributes: attributes to request; empty means all of them
        scope: python-ldap scope constant
        page_size: entries per page; capped to ``limit`` when that is smaller
        limit: stop after this many entries; ``None`` means no limit
        cancelled: checked after every entry; return True to stop

    """

    def __init__(
        self,
        sessions: SessionManager,
        basedn: str,
        searchfilter: str,
        attributes: list[str] | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
        page_size: int = PAGE_SIZE,
        limit: int | None = None,
        cancelled: CancelCheck | None = None,
    ) -> None:
        if limit is not None and limit < 0:
            msg = "limit must not be negative"
            raise ValueError(msg)
        self.sessions = sessions
        self.basedn = basedn
        self.searchfilter = searchfilter
        self.attributes = list(attributes) if attributes else []
        self.scope = scope
        self.page_size = page_size
        if limit is not None and limit < page_size:
            self.page_size = limit
        self.limit = limit
        self.cancelled = cancelled
        self.state = SearchState.DONE
        self.pages_fetched = 0

    def _fetch_page(self, cursor: PageCursor) -> tuple[list[LDAPData], PageCursor]:
        """
        Send one search request carrying ``cursor``'s cookie.

        Returns:
            The entries on this page, and the cursor for the next page.  The
            new cursor's cookie is empty if the server sent no paging control
            or an empty cookie.

        """
        controls = [cursor.control()]

        def op(connection) -> tuple[list[LDAPData], list]:
            msgid = connection.search_ext(
                self.basedn,
                self.scope,
                self.searchfilter,
                self.attributes or None,
                serverctrls=controls,
            )
            _, rdata, _, serverctrls = connection.result3(msgid)
            return rdata, serverctrls

        rdata, serverctrls = self.sessions.with_reconnect(op)
        self.pages_fetched += 1
        # AD returns search references alongside entries; we want to ignore
        # those
        entries = [(dn, attrs) for dn, attrs in rdata or [] if isinstance(attrs, dict)]
        paged_controls = get_paged_controls(serverctrls)
        cookie = paged_controls[0].cookie if paged_controls else b""
        logger.debug(
            "ldapquery.search.page basedn=%s page=%d entries=%d more=%s",
            self.basedn,
            self.pages_fetched,
            len(entries),
            bool(cookie),
        )
        return entries, PageCursor(size=cursor.size, cookie=cookie or b"")

    def _is_cancelled(self) -> bool:
        return bool(self.cancelled and self.cancelled())

    def _spend(self, remaining: int | None) -> int | None:
        """
        Account for one emitted entry.

        Returns:
            The remaining budget, or ``None`` if there is no limit.

        """
        if remaining is None:
            return None
        return remaining - 1

    def _exhausted(self, remaining: int | None) -> bool:
        return (remaining is not None and remaining <= 0) or self._is_cancelled()

    def __iter__(self) -> Iterator[DirectoryEntry]:
        logger.debug(
            "ldapquery.search basedn=%s filter=%s attributes=%s page_size=%d",
            self.basedn,
            self.searchfilter,
            self.attributes,
            self.page_size,
        )
        remaining = self.limit
        self.pages_fetched = 0
        self.state = SearchState.RUNNING
        if self._exhausted(remaining):
            self.state = SearchState.DONE
        cursor = PageCursor(size=self.page_size)
        while self.state is SearchState.RUNNING:
            entries, cursor = self._fetch_page(cursor)
            for dn, attrs in entries:
                yield DirectoryEntry(dn, attrs)
                remaining = self._spend(remaining)
                if self._exhausted(remaining):
                    self.state = SearchState.DONE
                    break
            else:
                if not cursor.has_more:
                    self.state = SearchState.DONE

    def run(self, sink: Callable[[DirectoryEntry], None]) -> int:
        """
        Stream every entry to ``sink``.

        Returns:
            The number of entries emitted.

        """
        emitted = 0
        for entry in self:
            sink(entry)
            emitted += 1
        return emitted


def search(
    sessions: SessionManager,
    basedn: str,
    searchfilter: str,
    attributes: list[str] | None = None,
    scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    page_size: int = PAGE_SIZE,
    limit: int | None = None,
    cancelled: CancelCheck | None = None,
) -> list[DirectoryEntry]:
    """Run a :py:class:`PagedSearch` and return all of its entries."""
    return list(
        PagedSearch(
            sessions,
            basedn,
            searchfilter,
            attributes=attributes,
            scope=scope,
            page_size=page_size,
            limit=limit,
            cancelled=cancelled,
        )
    )

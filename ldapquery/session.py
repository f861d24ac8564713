"""
Owner of the bound LDAP connection.

A :py:class:`SessionManager` dials and binds lazily on first use, caches the
bound connection, and hands it to every search.  When a search finds that the
server has dropped the connection, :py:meth:`SessionManager.with_reconnect`
throws the cached session away, binds a new one and retries the search once.

Acquire, invalidate and reconnect all happen under one lock, so concurrent
queries that notice the same dead connection produce one new dial, not one
each.
"""

import logging
import threading
from collections.abc import Callable
from contextlib import suppress
from typing import TypeVar

from ldapquery import ldap

from .config import LdapConfig
from .exceptions import (
    BIND_PHASE,
    DIAL_PHASE,
    SEARCH_PHASE,
    LdapConnectionError,
    StaleConnectionError,
    classify_error,
)

logger = logging.getLogger("django-ldapquery")

T = TypeVar("T")

#: The one key sessions are cached under
CACHE_KEY = "ldap"


class LdapSession:
    """
    A bound python-ldap connection plus what it was bound with.

    Args:
        connection: the bound ``LDAPObject``
        config: the configuration used to dial and bind it

    """

    def __init__(
        self,
        connection: ldap.ldapobject.LDAPObject,  # type: ignore[name-defined]
        config: LdapConfig,
    ) -> None:
        self.connection = connection
        self.url = config.server_url
        self.user = config.user
        self.tls_required = config.tls_required
        self.tls_insecure_skip_verify = bool(config.tls_insecure_skip_verify)
        self.bound = False

    def close(self) -> None:
        """Unbind, ignoring errors from a connection that is already gone."""
        if self.bound:
            with suppress(ldap.LDAPError):  # type: ignore[attr-defined]
                self.connection.unbind_s()
        self.bound = False

    def __repr__(self) -> str:
        state = "bound" if self.bound else "unbound"
        if self.tls_required:
            tls = "tls, no verify" if self.tls_insecure_skip_verify else "tls"
        else:
            tls = "plain"
        return f"<LdapSession {self.url} as {self.user} ({state}, {tls})>"


class SessionManager:
    """
    Dial, bind, cache and recover the connection to one LDAP server.

    Args:
        config: connection parameters; validated on first :py:meth:`acquire`

    """

    def __init__(self, config: LdapConfig) -> None:
        self.config = config
        self.logger = logger
        self._sessions: dict[str, LdapSession] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, name: str = "default") -> "SessionManager":
        return cls(LdapConfig.from_settings(name))

    def _configure(self, connection: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        config = self.config
        connection.set_option(
            ldap.OPT_REFERRALS,  # type: ignore[attr-defined]
            1 if config.follow_referrals else 0,
        )
        connection.set_option(ldap.OPT_NETWORK_TIMEOUT, float(config.timeout))  # type: ignore[attr-defined]
        if config.uses_tls:
            if config.tls_insecure_skip_verify:
                connection.set_option(
                    ldap.OPT_X_TLS_REQUIRE_CERT,  # type: ignore[attr-defined]
                    ldap.OPT_X_TLS_NEVER,  # type: ignore[attr-defined]
                )
            else:
                connection.set_option(
                    ldap.OPT_X_TLS_REQUIRE_CERT,  # type: ignore[attr-defined]
                    ldap.OPT_X_TLS_DEMAND,  # type: ignore[attr-defined]
                )
            connection.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]

    def _dial(self) -> LdapSession:
        """
        Open and bind a new connection.

        Raises:
            ConfigError: a required connection parameter is missing
            LdapConnectionError: the server could not be reached
            AuthError: the server rejected our credentials

        Returns:
            A bound :py:class:`LdapSession`.

        """
        config = self.config
        config.validate()
        url = config.server_url
        self.logger.debug("ldapquery.session.dial url=%s user=%s", url, config.user)
        try:
            connection = ldap.initialize(url)  # type: ignore[attr-defined]
            self._configure(connection)
            if config.use_starttls:
                connection.start_tls_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            error = classify_error(e, DIAL_PHASE)
            self.logger.error("ldapquery.session.dial url=%s error=%s", url, error)
            raise error from e
        session = LdapSession(connection, config)
        try:
            connection.simple_bind_s(config.user, config.password)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            error = classify_error(e, BIND_PHASE)
            self.logger.error(
                "ldapquery.session.bind url=%s user=%s error=%s", url, config.user, error
            )
            raise error from e
        session.bound = True
        self.logger.debug("ldapquery.session.bind url=%s user=%s ok", url, config.user)
        return session

    def acquire(self) -> LdapSession:
        """
        Return the cached session, dialing and binding one if there is none.
        """
        with self._lock:
            session = self._sessions.get(CACHE_KEY)
            if session is None:
                session = self._dial()
                self._sessions[CACHE_KEY] = session
            return session

    def invalidate(self, session: LdapSession | None = None) -> None:
        """
        Drop the cached session.

        Keyword Args:
            session: only drop the cache if it still holds this session.  A
                thread that saw ``session`` die must not throw away a fresh
                session another thread has already dialed.

        """
        with self._lock:
            cached = self._sessions.get(CACHE_KEY)
            if cached is None or (session is not None and cached is not session):
                return
            del self._sessions[CACHE_KEY]
            cached.close()

    def reconnect(self, stale: LdapSession | None = None) -> LdapSession:
        """Replace ``stale`` with a freshly bound session."""
        with self._lock:
            self.invalidate(stale)
            try:
                return self.acquire()
            except LdapConnectionError:
                self.logger.error("ldapquery.session.reconnect failed")
                raise

    def has_session(self) -> bool:
        with self._lock:
            return CACHE_KEY in self._sessions

    def close(self) -> None:
        self.invalidate()

    def with_reconnect(
        self,
        op: Callable[[ldap.ldapobject.LDAPObject], T],  # type: ignore[name-defined]
    ) -> T:
        """
        Run ``op`` against the current connection.

        If ``op`` finds the connection closed by the server, reconnect once
        and run ``op`` again.  A second dead connection is not retried.

        Args:
            op: callable taking the bound ``LDAPObject``

        Raises:
            LdapConnectionError: the retry found the connection dead too, or
                we could not reconnect
            SearchError: the server failed ``op`` with any other result code

        Returns:
            Whatever ``op`` returns.

        """
        session = self.acquire()
        try:
            return op(session.connection)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            error = classify_error(e, SEARCH_PHASE)
            if not isinstance(error, StaleConnectionError):
                raise error from e
        self.logger.info("ldapquery.session: LDAP connection closed, trying to reconnect")
        session = self.reconnect(session)
        try:
            return op(session.connection)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            error = classify_error(e, SEARCH_PHASE)
            if isinstance(error, StaleConnectionError):
                self.invalidate(session)
                msg = f"connection lost again after reconnecting: {error.message}"
                raise LdapConnectionError(msg, error.result) from e
            raise error from e


#: Process-wide managers, one per ``LDAP_SERVERS`` key
_managers: dict[str, SessionManager] = {}
_managers_lock = threading.Lock()


def get_session_manager(name: str = "default") -> SessionManager:
    """
    Return the shared :py:class:`SessionManager` for ``settings.LDAP_SERVERS[name]``,
    creating it on first use.
    """
    with _managers_lock:
        if name not in _managers:
            _managers[name] = SessionManager.from_settings(name)
        return _managers[name]


def reset_session_managers() -> None:
    """Close and forget every shared manager."""
    with _managers_lock:
        for manager in _managers.values():
            manager.close()
        _managers.clear()

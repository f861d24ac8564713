"""
Errors raised by ldapquery.

Every failure is reported as one of a closed set of exception classes, each
naming the phase of the query that failed.  Errors coming out of python-ldap
are translated exactly once, at the transport boundary, by
:py:func:`classify_error`; nothing else in the package inspects LDAP result
codes.
"""

from typing import Any

from django.core.exceptions import ImproperlyConfigured

from ldapquery import ldap

#: Result code meaning "network error / connection already closed"
NETWORK_ERROR_CODE = 200

CONFIG_PHASE = "config validation"
DIAL_PHASE = "dial"
BIND_PHASE = "bind"
SEARCH_PHASE = "search"
DECODE_PHASE = "decode"


class LdapQueryError(Exception):
    """
    Base class for everything ldapquery raises.

    Args:
        message: human readable description of the failure

    Keyword Args:
        result: the LDAP result code, if the server supplied one

    """

    phase: str = SEARCH_PHASE

    def __init__(self, message: str, result: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.result = result

    def __str__(self) -> str:
        return f"{self.phase}: {self.message}"


class ConfigError(LdapQueryError, ImproperlyConfigured):
    """A required connection parameter is missing or invalid."""

    phase = CONFIG_PHASE


class LdapConnectionError(LdapQueryError):
    """We could not open a connection to the server, or lost it for good."""

    phase = DIAL_PHASE


class StaleConnectionError(LdapConnectionError):
    """
    The server closed a connection we had cached.  The session manager
    recovers from this once by reconnecting.
    """

    phase = SEARCH_PHASE


class AuthError(LdapQueryError):
    """The server rejected our bind."""

    phase = BIND_PHASE


class SearchError(LdapQueryError):
    """The server returned a non-zero result code for a search."""

    phase = SEARCH_PHASE


class NotFoundError(SearchError):
    """The base DN of a search does not exist."""


class DecodeError(LdapQueryError, ValueError):
    """A binary attribute or a timestamp could not be decoded."""

    phase = DECODE_PHASE


def describe(exc: Exception) -> tuple[str, int | None]:
    """
    Pull the description and result code out of a python-ldap exception.

    python-ldap raises with a dict as the first argument (``result``,
    ``desc``, ``info``), but code that raises LDAP exceptions by hand often
    passes a plain string, so handle both.

    Args:
        exc: the exception to describe

    Returns:
        A ``(description, result_code)`` tuple.

    """
    if exc.args and isinstance(exc.args[0], dict):
        details: dict[str, Any] = exc.args[0]
        desc = str(details.get("desc", type(exc).__name__))
        if details.get("info"):
            desc = f"{desc} ({details['info']})"
        result = details.get("result")
        return desc, result if isinstance(result, int) else None
    if exc.args:
        return str(exc.args[0]), None
    return type(exc).__name__, None


def classify_error(exc: Exception, phase: str) -> LdapQueryError:
    """
    Translate a python-ldap exception into one of our error classes.

    Args:
        exc: the exception raised by python-ldap
        phase: which phase we were in: :py:data:`DIAL_PHASE`,
            :py:data:`BIND_PHASE` or :py:data:`SEARCH_PHASE`

    Returns:
        The matching :py:class:`LdapQueryError` instance.  The caller is
        expected to raise it ``from exc``.

    """
    desc, result = describe(exc)
    server_down = (
        isinstance(exc, ldap.SERVER_DOWN) or result == NETWORK_ERROR_CODE  # type: ignore[attr-defined]
    )
    if server_down:
        if phase == SEARCH_PHASE:
            return StaleConnectionError(f"connection closed by peer: {desc}", result)
        return LdapConnectionError(f"could not reach server: {desc}", result)
    if isinstance(exc, (ldap.CONNECT_ERROR, ldap.TIMEOUT)):  # type: ignore[attr-defined]
        error = LdapConnectionError(desc, result)
        error.phase = phase
        return error
    if phase == BIND_PHASE:
        return AuthError(f"bind rejected: {desc}", result)
    if isinstance(exc, ldap.NO_SUCH_OBJECT) and phase == SEARCH_PHASE:  # type: ignore[attr-defined]
        return NotFoundError(desc, result)
    if phase == DIAL_PHASE:
        return LdapConnectionError(desc, result)
    return SearchError(desc, result)

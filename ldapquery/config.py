"""
Connection configuration.

Connection parameters live in Django settings, in the ``LDAP_SERVERS``
dictionary, keyed by server name::

    LDAP_SERVERS = {
        "default": {
            "host": "dc1.example.com",
            "port": 636,
            "user": "CN=svc-query,OU=Service Accounts,DC=example,DC=com",
            "password": "secret",
            "basedn": "DC=example,DC=com",
            "tls_required": True,
            "tls_insecure_skip_verify": False,
        }
    }

``url`` may be given instead of ``host``/``port``.
"""

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from django.conf import settings

from .exceptions import ConfigError

#: Page size used when neither the server config nor settings say otherwise
DEFAULT_PAGE_SIZE = 1000
DEFAULT_TIMEOUT = 15.0


def get_setting(setting_name: str, default_value: Any) -> Any:
    """
    Get an ``LDAPQUERY_`` prefixed value from Django settings with fallback.

    Args:
        setting_name: name of the setting, without the ``LDAPQUERY_`` prefix
        default_value: value to use if the setting is not defined

    Returns:
        The configured value, or ``default_value``.

    """
    return getattr(settings, f"LDAPQUERY_{setting_name}", default_value)


@dataclass
class LdapConfig:
    """
    Everything we need to dial, bind and search one LDAP server.

    ``tls_insecure_skip_verify`` has no default: whenever TLS is
    in use the configuration must say whether certificates are verified.
    """

    url: str = ""
    host: str = ""
    port: str = ""
    user: str = ""
    password: str = ""
    basedn: str = ""
    tls_required: bool = False
    tls_insecure_skip_verify: bool | None = None
    use_starttls: bool = False
    timeout: float = DEFAULT_TIMEOUT
    follow_referrals: bool = False
    attributes: list[str] = field(default_factory=list)
    page_size: int = 0
    #: name of the ``LDAP_SERVERS`` entry we were built from
    name: str = "default"

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str = "default") -> "LdapConfig":
        port = data.get("port")
        return cls(
            url=data.get("url") or "",
            host=data.get("host") or "",
            port=str(port) if port else "",
            user=data.get("user") or "",
            password=data.get("password") or "",
            basedn=data.get("basedn") or "",
            tls_required=bool(data.get("tls_required", False)),
            tls_insecure_skip_verify=data.get("tls_insecure_skip_verify"),
            use_starttls=bool(data.get("use_starttls", False)),
            timeout=float(data.get("timeout", DEFAULT_TIMEOUT)),
            follow_referrals=bool(data.get("follow_referrals", False)),
            attributes=list(data.get("attributes") or []),
            page_size=int(data.get("page_size") or 0),
            name=name,
        )

    @classmethod
    def from_settings(cls, name: str = "default") -> "LdapConfig":
        """
        Build a config from ``settings.LDAP_SERVERS[name]``.

        Args:
            name: the key in ``settings.LDAP_SERVERS``

        Raises:
            ConfigError: ``LDAP_SERVERS`` is not defined, or has no ``name`` key

        Returns:
            An unvalidated :py:class:`LdapConfig`.

        """
        try:
            servers = settings.LDAP_SERVERS
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ConfigError(msg) from e
        try:
            data = servers[name]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{name}'"
            raise ConfigError(msg) from e
        return cls.from_dict(data, name=name)

    @property
    def effective_page_size(self) -> int:
        return self.page_size or int(get_setting("PAGE_SIZE", DEFAULT_PAGE_SIZE))

    @property
    def uses_tls(self) -> bool:
        return self.tls_required or self.use_starttls

    @property
    def host_name(self) -> str:
        """The server host, from ``host`` or else parsed out of ``url``."""
        if self.host:
            return self.host
        return urlsplit(self.url).hostname or ""

    @property
    def server_url(self) -> str:
        """
        The URL we dial: ``url`` verbatim if set, otherwise built from
        ``host`` and ``port``, using ``ldaps://`` when TLS is required.
        """
        if self.url:
            return self.url
        scheme = "ldaps" if self.tls_required and not self.use_starttls else "ldap"
        port = self.port or ("636" if scheme == "ldaps" else "389")
        return f"{scheme}://{self.host}:{port}"

    def validate(self) -> None:
        """
        Check that every required parameter is present.  Called before any
        network activity.

        Raises:
            ConfigError: a required parameter is empty; the message names it

        """
        where = f"settings.LDAP_SERVERS['{self.name}']"
        if not self.url and not self.host:
            msg = f"'host' or 'url' must be set in {where}"
            raise ConfigError(msg)
        for attr in ("user", "password", "basedn"):
            if not getattr(self, attr):
                msg = f"'{attr}' must be set in {where}"
                raise ConfigError(msg)
        if self.uses_tls and self.tls_insecure_skip_verify is None:
            msg = (
                f"'tls_insecure_skip_verify' must be set explicitly in {where} "
                "when TLS is in use"
            )
            raise ConfigError(msg)

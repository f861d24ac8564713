# This file is here so that we can patch the ldap module in our tests.
# python-ldap-faker patches ``<module>.ldap.initialize``, so everything that
# opens a connection goes through ``ldapquery.ldap`` instead of ``ldap``.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__

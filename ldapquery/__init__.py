"""
SQL-style queries against LDAP and Active Directory trees, returning typed rows.
"""

__version__ = "0.1.0"

# Django settings have to be configured before anything reads them, and
# every test module shares the same LDAP_SERVERS.
from django.conf import settings

LDAP_SERVERS = {
    "default": {
        "url": "ldap://localhost:389",
        "user": "cn=admin,dc=example,dc=com",
        "password": "admin",
        "basedn": "dc=example,dc=com",
        "timeout": 15.0,
        "follow_referrals": False,
    },
    "tls_server": {
        "host": "dc1.example.com",
        "user": "cn=admin,dc=example,dc=com",
        "password": "admin",
        "basedn": "dc=example,dc=com",
        "tls_required": True,
        "tls_insecure_skip_verify": False,
    },
}

if not settings.configured:
    settings.configure(LDAP_SERVERS=LDAP_SERVERS, LDAPQUERY_PAGE_SIZE=1000)

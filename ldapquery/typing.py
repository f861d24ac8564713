"""
Type aliases for the data that flows between the transport, the decoder and
the entity tables.
"""

from collections.abc import Callable

#: Attribute values exactly as python-ldap hands them to us
RawAttributes = dict[str, list[bytes]]
#: Attribute values after decoding, in server order
DecodedAttributes = dict[str, list[str]]
#: One search result as returned by ``result3()``: (dn, attributes)
LDAPData = tuple[str, RawAttributes]
#: Zero-argument callable telling a search to stop early
CancelCheck = Callable[[], bool]

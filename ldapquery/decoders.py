"""
Decoding of raw LDAP attribute values.

python-ldap returns every attribute value as ``bytes``.  Most of them are
UTF-8 text, but Active Directory stores a few attributes in binary form
(``objectSid``, ``objectGUID``) and timestamps in generalized-time format
with a variable number of fractional digits.  The functions here turn all of
those into strings and aware datetimes.

Decoding never aborts a row: a value we cannot decode is replaced with a
placeholder (binary attributes) or :py:data:`ZERO_TIME` (timestamps).
"""

import datetime
import logging
import struct

import ldap
import pytz
from ldap.dn import explode_dn

from .exceptions import DecodeError
from .typing import DecodedAttributes, RawAttributes

logger = logging.getLogger("django-ldapquery")

#: Returned by :py:func:`parse_timestamp` for empty or unparseable input
ZERO_TIME: datetime.datetime = pytz.utc.localize(datetime.datetime.min)
#: Format of the value substituted for an undecodable binary attribute
DECODE_ERROR_PLACEHOLDER = "decode error: {error}"
#: Bit in ``userAccountControl`` that marks an account as disabled
ACCOUNTDISABLE = 0x0002

LDAP_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

SID_HEADER_LENGTH = 8
GUID_LENGTH = 16


def sid_from_bytes(raw: bytes) -> str:
    """
    Decode a binary security identifier.

    The layout is one byte of revision, one byte of sub-authority count, six
    bytes of big-endian identifier authority, then ``count`` little-endian
    32-bit sub-authorities.

    Args:
        raw: the raw ``objectSid`` value

    Raises:
        DecodeError: ``raw`` is too short for the layout it declares

    Returns:
        The SID in ``S-1-5-21-...`` form.

    """
    if len(raw) < SID_HEADER_LENGTH:
        msg = f"invalid SID length ({len(raw)} bytes)"
        raise DecodeError(msg)
    revision = raw[0]
    count = raw[1]
    needed = SID_HEADER_LENGTH + count * 4
    if len(raw) < needed:
        msg = f"truncated SID: need {needed} bytes, got {len(raw)}"
        raise DecodeError(msg)
    authority = int.from_bytes(raw[2:SID_HEADER_LENGTH], "big")
    subauthorities = struct.unpack_from(f"<{count}I", raw, SID_HEADER_LENGTH)
    return "-".join(
        ["S", str(revision), str(authority), *(str(s) for s in subauthorities)]
    )


def guid_from_bytes(raw: bytes) -> str:
    """
    Decode a mixed-endian binary GUID into ``8-4-4-4-12`` lower-case hex.

    Raises:
        DecodeError: ``raw`` is not exactly 16 bytes long

    """
    if len(raw) != GUID_LENGTH:
        msg = f"invalid GUID length ({len(raw)} bytes)"
        raise DecodeError(msg)
    d1, d2, d3 = struct.unpack_from("<IHH", raw)
    return f"{d1:08x}-{d2:04x}-{d3:04x}-{raw[8:10].hex()}-{raw[10:16].hex()}"


def decode_sid(raw: bytes) -> str:
    """
    Like :py:func:`sid_from_bytes`, but return a placeholder string instead
    of raising on malformed input.
    """
    try:
        return sid_from_bytes(raw)
    except DecodeError as e:
        logger.warning("ldapquery.decode_sid: %s", e.message)
        return DECODE_ERROR_PLACEHOLDER.format(error=e.message)


def decode_guid(raw: bytes) -> str:
    """
    Like :py:func:`guid_from_bytes`, but return a placeholder string instead
    of raising on malformed input.
    """
    try:
        return guid_from_bytes(raw)
    except DecodeError as e:
        logger.warning("ldapquery.decode_guid: %s", e.message)
        return DECODE_ERROR_PLACEHOLDER.format(error=e.message)


def decode_text(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


#: Attributes that need something other than UTF-8 decoding
BINARY_DECODERS = {
    "objectsid": decode_sid,
    "objectguid": decode_guid,
}


def decode_values(name: str, values: list[bytes]) -> list[str]:
    decoder = BINARY_DECODERS.get(name.lower(), decode_text)
    return [decoder(value) for value in values]


def decode_attributes(attributes: RawAttributes) -> DecodedAttributes:
    """
    Decode every attribute of a search result, keeping server order.

    Args:
        attributes: the attribute dictionary of one search result

    Returns:
        A new dictionary mapping attribute names to lists of strings.

    """
    return {name: decode_values(name, values) for name, values in attributes.items()}


def parse_timestamp(value: str) -> datetime.datetime:
    """
    Parse an LDAP generalized-time string such as ``20230101120000.0Z``.

    Active Directory does not use a fixed number of fractional digits, so
    the fraction's precision is taken from the string itself.  Timezone
    designator ``Z`` is required; the result is an aware UTC datetime.

    Args:
        value: the timestamp string

    Returns:
        The parsed datetime, or :py:data:`ZERO_TIME` if ``value`` is empty or
        cannot be parsed.

    """
    if not value:
        return ZERO_TIME
    try:
        return _parse_timestamp(value)
    except (DecodeError, ValueError) as e:
        logger.error("ldapquery.parse_timestamp: could not parse %r: %s", value, e)
        return ZERO_TIME


def _parse_timestamp(value: str) -> datetime.datetime:
    if not value.endswith("Z"):
        msg = f"timestamp {value!r} has no 'Z' designator"
        raise DecodeError(msg)
    whole, _, fraction = value[:-1].partition(".")
    if fraction and not fraction.isdigit():
        msg = f"timestamp {value!r} has a malformed fraction"
        raise DecodeError(msg)
    dt = datetime.datetime.strptime(whole, LDAP_TIMESTAMP_FORMAT)
    if fraction:
        digits = len(fraction)
        # Anything past microsecond precision is dropped
        if digits > 6:  # noqa: PLR2004
            fraction = fraction[:6]
            digits = 6
        dt = dt.replace(microsecond=int(fraction) * 10 ** (6 - digits))
    return pytz.utc.localize(dt)


def is_zero_time(value: datetime.datetime | None) -> bool:
    return value is None or value == ZERO_TIME


def organizational_unit(dn: str) -> str:
    """
    Return the part of ``dn`` starting at its first ``OU=`` RDN, or ``""``
    if the DN has no organizational unit component.
    """
    try:
        rdns = explode_dn(dn)
    except ldap.DECODING_ERROR:
        logger.warning("ldapquery.organizational_unit: could not parse dn %r", dn)
        return ""
    for index, rdn in enumerate(rdns):
        if rdn.lower().startswith("ou="):
            return ",".join(rdns[index:])
    return ""


def account_disabled(values: list[str]) -> bool:
    """
    Return True if the ``userAccountControl`` value has the ACCOUNTDISABLE
    bit set.
    """
    if not values:
        return False
    try:
        return bool(int(values[0]) & ACCOUNTDISABLE)
    except ValueError:
        logger.warning(
            "ldapquery.account_disabled: bad userAccountControl %r", values[0]
        )
        return False

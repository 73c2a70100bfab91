"""
Normalization of raw directory entries into canonical attribute maps.

Every record returned by the gateway, paged or not, passes through
normalize_record(): attribute names are lower-cased, text values decoded,
single-element value lists collapsed to scalars, and the binary objectGUID and
objectSid values decoded to their string forms.
"""

import uuid
import logging
from typing import Any, Dict, Iterable, List, Optional

from ldap3.protocol.formatters.formatters import format_sid
from ldap3.utils.conv import escape_bytes

logger = logging.getLogger(__name__)

BINARY_ATTRIBUTES = frozenset([
    'objectguid',
    'objectsid',
    'thumbnailphoto',
    'jpegphoto',
    'usercertificate',
    'msexchmailboxguid',
])


def bin_to_str_guid(value: Any) -> Optional[str]:
    """
    Convert a 16 byte objectGUID to its canonical string form.

    Active Directory stores the first three fields little-endian, which is the
    layout uuid calls bytes_le.
    """
    if value is None or isinstance(value, str):
        return value
    if len(value) != 16:
        logger.warning(f"Unexpected objectGUID length {len(value)}, leaving value undecoded")
        return value.hex()
    return str(uuid.UUID(bytes_le=bytes(value)))


def bin_to_str_sid(value: Any) -> Optional[str]:
    """Convert a binary objectSid to S-1-... form."""
    if value is None or isinstance(value, str):
        return value
    return format_sid(bytes(value))


def str_to_hex_guid(guid: str, escape: bool = False) -> str:
    """
    Convert a string GUID to the byte order the directory stores.

    With escape=True the result is the backslash-escaped form used inside a
    search filter, e.g. (objectGUID=\\78\\56\\34\\12...).
    """
    raw = uuid.UUID(guid).bytes_le
    if escape:
        return escape_bytes(raw)
    return raw.hex()


def _decode_value(attribute: str, value: Any) -> Any:
    if not isinstance(value, (bytes, bytearray)) or attribute in BINARY_ATTRIBUTES:
        return value
    try:
        return bytes(value).decode('utf-8')
    except UnicodeDecodeError:
        return bytes(value)


def normalize_record(dn: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build a canonical DirectoryRecord from a DN and its raw attribute values.

    Args:
        dn: Distinguished name of the entry
        attributes: Attribute name to value or list of values

    Returns:
        Record keyed by lower-cased attribute name, always containing 'dn'
    """
    record = {'dn': dn}

    for name, value in attributes.items():
        attribute = name.lower()

        if isinstance(value, (list, tuple)):
            values = [_decode_value(attribute, item) for item in value]
            value = values[0] if len(values) == 1 else values
        else:
            value = _decode_value(attribute, value)

        if attribute == 'objectguid':
            value = bin_to_str_guid(value) if not isinstance(value, list) else [bin_to_str_guid(v) for v in value]
        elif attribute == 'objectsid':
            value = bin_to_str_sid(value) if not isinstance(value, list) else [bin_to_str_sid(v) for v in value]

        record[attribute] = value

    return record


def normalize_records(entries: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Normalize the searchResEntry items of an ldap3 response.

    Referrals and other non-entry items are skipped. Raw attribute values are
    used so that binary values reach the GUID/SID decoders untouched.
    """
    records = []
    for entry in entries:
        if entry.get('type', 'searchResEntry') != 'searchResEntry':
            continue
        raw = entry.get('raw_attributes')
        if raw is None:
            raw = entry.get('attributes', {})
        records.append(normalize_record(entry['dn'], raw))
    return records


def as_list(value: Any) -> List[Any]:
    """Multi-valued attributes with one value arrive as scalars; make them lists again."""
    if value is None or value == '' or value == []:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]

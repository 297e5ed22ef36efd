"""Phone number normalization and equivalence utilities.

Phone numbers reach the core in at least three uncontrolled formats: device
address book entries, manually typed registration input, and values already
stored in the directory. There is no shared canonicalization authority, so
matching works on a bounded set of plausible equivalent representations.

Key behaviors:
- normalize(): keep digits and a single leading "+"
- candidate_formats(): normalized form, with/without "+", +1 and +44
  (including the UK leading-zero national form) variants, and last-10 /
  last-9 digit suffixes
- is_same_number(): suffix match in either direction (self-exclusion)
"""

import re

from chatapp.schemas.contact import DeviceContact

# Shortest normalized number worth matching
MIN_CONTACT_PHONE_LENGTH = 6

# Shortest valid registration number: "+" followed by this many digits
MIN_REGISTRATION_DIGITS = 7

# Registration numbers typed with exactly this many digits get the UK prefix
NATIONAL_NUMBER_LENGTH = 10
DEFAULT_REGISTRATION_PREFIX = "+44"

_NON_PHONE_CHARS = re.compile(r"[^\d+]")


def normalize(phone_number: str | None) -> str:
    """Normalize a phone number for comparison.

    Removes every character except digits and keeps a "+" only when the
    number starts with one.

    Examples:
        >>> normalize("+44 7700-900 123")
        '+447700900123'
        >>> normalize("(555) 010-9999")
        '5550109999'
        >>> normalize("44+12")
        '4412'
        >>> normalize(None)
        ''
    """
    if not phone_number:
        return ""

    cleaned = _NON_PHONE_CHARS.sub("", phone_number)
    digits = cleaned.replace("+", "")
    if not digits:
        return ""
    if cleaned.startswith("+"):
        return f"+{digits}"
    return digits


def phone_index_key(phone_number: str) -> str:
    """Key of the phone index entry for a number: normalized, "+" stripped."""
    return normalize(phone_number).lstrip("+")


def candidate_formats(phone_number: str) -> set[str]:
    """Generate equivalent representations of a phone number.

    Returns an empty set when the number has no digits.

    Examples:
        >>> sorted(candidate_formats("07700900123"))
        ['+07700900123', '+447700900123', '07700900123', '700900123', '7700900123']
    """
    normalized = normalize(phone_number)
    if not normalized:
        return set()

    formats = {normalized}

    # Without the + sign
    if normalized.startswith("+"):
        formats.add(normalized[1:])

    # International format missing the +
    if len(normalized) > 10 and not normalized.startswith("+"):
        formats.add(f"+{normalized}")

    # North American numbers with and without country code
    if normalized.startswith("+1") and len(normalized) == 12:
        formats.add(normalized[2:])
    elif len(normalized) == 10:
        formats.add(f"+1{normalized}")

    # UK numbers, including the national leading-zero convention
    if normalized.startswith("+44") and len(normalized) >= 12:
        formats.add(normalized[3:])
        formats.add(f"0{normalized[3:]}")
    elif normalized.startswith("0") and len(normalized) == 11:
        formats.add(f"+44{normalized[1:]}")

    # Local-part suffixes
    if len(normalized) >= 10:
        formats.add(normalized[-10:])
    if len(normalized) >= 9:
        formats.add(normalized[-9:])

    return formats


def formats_overlap(a: str, b: str) -> bool:
    """True if two numbers share at least one candidate format."""
    return not candidate_formats(a).isdisjoint(candidate_formats(b))


def is_same_number(a: str, b: str) -> bool:
    """Approximate "same number, different formatting".

    Compares normalized numbers without "+" by suffix in either direction.
    Empty numbers never match.
    """
    left = normalize(a).lstrip("+")
    right = normalize(b).lstrip("+")
    if not left or not right:
        return False
    return left.endswith(right) or right.endswith(left)


def dedupe_device_contacts(contacts: list[DeviceContact]) -> list[DeviceContact]:
    """Drop contacts whose normalized number is too short or already seen.

    Keeps the first contact for each normalized number, preserving order.
    """
    seen: set[str] = set()
    unique: list[DeviceContact] = []
    for contact in contacts:
        normalized = normalize(contact.raw_phone_number)
        if len(normalized) < MIN_CONTACT_PHONE_LENGTH or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(contact)
    return unique


def format_registration_number(raw: str) -> str:
    """Canonicalize a phone number typed on the registration screen.

    Numbers already starting with "+" are kept, bare national numbers of
    NATIONAL_NUMBER_LENGTH digits get the UK prefix, anything else gets "+".
    """
    phone = raw.strip()
    if phone.startswith("+"):
        return phone
    if len(phone) == NATIONAL_NUMBER_LENGTH:
        return f"{DEFAULT_REGISTRATION_PREFIX}{phone}"
    return f"+{phone}"


def is_valid_registration_number(phone: str) -> bool:
    """A registration number is "+" followed by at least seven digits only."""
    return (
        phone.startswith("+")
        and len(phone) >= MIN_REGISTRATION_DIGITS + 1
        and phone[1:].isdigit()
    )

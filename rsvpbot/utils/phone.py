import re
from typing import List, Optional

from rsvpbot.utils.env import get_default_country_code

_SEPARATORS = re.compile(r"[()\s.\-]+")


def _clean_phone(raw_phone: str) -> str:
    """Strip the 'whatsapp:' prefix, separators and a leading '+' / '00'."""
    phone = raw_phone.strip()
    phone = phone.replace("whatsapp:", "")
    phone = _SEPARATORS.sub("", phone)

    if phone.startswith("+"):
        phone = phone[1:]
    elif phone.startswith("00"):
        phone = phone[2:]

    return phone


def normalize_phone_formats(phone_number: str, country_code: Optional[str] = None) -> List[str]:
    """
    Return every representation a contact store may have used for a phone number.

    The original string always comes first. For numbers of the configured
    country the local and international forms are added:
    - '972544349661'  -> ['972544349661', '0544349661', '+972544349661']
    - '054-434-9661'  -> ['054-434-9661', '0544349661', '972544349661', '+972544349661']

    Never raises: input that is not a phone number yields just ``[phone_number]``.
    """
    formats: List[str] = [phone_number]
    if not phone_number or not isinstance(phone_number, str):
        return formats

    cleaned = _clean_phone(phone_number)
    if not cleaned.isdigit():
        return formats

    cc = country_code or get_default_country_code()
    candidates = [cleaned]

    if cleaned.startswith(cc) and len(cleaned) > len(cc):
        national = cleaned[len(cc):]
        candidates.append("0" + national)
        candidates.append("+" + cleaned)
    elif cleaned.startswith("0") and len(cleaned) > 1:
        international = cc + cleaned[1:]
        candidates.append(international)
        candidates.append("+" + international)

    for candidate in candidates:
        if candidate not in formats:
            formats.append(candidate)

    return formats


def normalize_phone_for_dialog360(raw_phone: str, country_code: Optional[str] = None) -> Optional[str]:
    """
    Normalize a phone number to the digits-only international form 360dialog expects.

    Rules:
    - Strip spaces, dashes, parentheses, the 'whatsapp:' prefix and a leading '+'.
    - If it starts with '0' and has 9-10 digits (e.g. '0544349661'):
        -> replace the leading '0' with the country code -> '972544349661'.
    - Otherwise return the cleaned digits.
    """
    if not raw_phone:
        return None

    cc = country_code or get_default_country_code()
    phone = _clean_phone(raw_phone)

    if phone.startswith("0") and len(phone) in (9, 10):
        return cc + phone[1:]

    return phone

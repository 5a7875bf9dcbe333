"""Phone canonicalization shared by booking and client administration."""
import re
from typing import Optional

from stylebook.errors import InvalidPhone

MIN_DIGITS = 8
MAX_DIGITS = 15

# ASCII 0-9 only; fullwidth and other Unicode digits are dropped
_NON_DIGITS = re.compile(r"[^0-9]")


def normalize_phone(raw_phone: Optional[str]) -> str:
    """
    Reduce a phone number to its digits-only identity key.

    "+54 (911) 1111-1111" and "5491111111111" normalize to the same key.

    Raises:
        InvalidPhone: If the digit count is outside [8, 15]
    """
    value = (raw_phone or "").strip()
    digits = _NON_DIGITS.sub("", value)
    if len(digits) < MIN_DIGITS or len(digits) > MAX_DIGITS:
        raise InvalidPhone(f"Invalid phone number (between {MIN_DIGITS} and {MAX_DIGITS} digits)")
    return digits

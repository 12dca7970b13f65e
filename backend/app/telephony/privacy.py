"""
DialBridge - Phone Number Utilities

Phone number masking and normalization for the carrier integration.

IMPORTANT:
    Raw phone numbers must NEVER be logged in cleartext.
    All phone handling that reaches a log line must use mask_phone_number.
"""

import re
from typing import Optional


def mask_phone_number(number: Optional[str], show_last_digits: int = 2) -> str:
    """
    Mask a phone number for privacy.

    Examples:
        +911234567890 → ***90
        1234567890    → ***90
        None          → unknown

    Args:
        number: Phone number to mask
        show_last_digits: Number of digits to show (default: 2)

    Returns:
        Masked phone number string
    """
    if not number:
        return "unknown"

    digits = re.sub(r'\D', '', str(number))

    if len(digits) < show_last_digits:
        return "***"

    return f"***{digits[-show_last_digits:]}"


def normalize_phone_number(number: str, default_country_code: str = "91") -> str:
    """
    Normalize a dialable number to the digits-only form the carrier expects.

    Bare 10-digit national numbers get the default country code prefixed.

    Examples:
        +91 98765 43210 → 919876543210
        9876543210      → 919876543210

    Raises:
        ValueError: If the number contains no digits
    """
    digits = re.sub(r'\D', '', number or "")
    if not digits:
        raise ValueError("Phone number contains no digits")

    if len(digits) == 10:
        digits = f"{default_country_code}{digits}"

    return digits

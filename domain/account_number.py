from __future__ import annotations

from .errors import ValidationError

BASE_ACCOUNT_NUMBER = 101051


def derive_account_number(display_name: str) -> int:
    """
    Derive the account number from the first letter of a display name.

    "Alice" -> 101052, "zeta" -> 101077. Names that do not start with a
    letter A-Z (after uppercasing) are rejected.
    """

    if not display_name:
        raise ValidationError("invalid_display_name", "Account name is required.")

    first_letter = display_name[0].upper()
    # "ß".upper() is "SS", so check the length as well as the range.
    if len(first_letter) != 1 or not ("A" <= first_letter <= "Z"):
        raise ValidationError(
            "invalid_display_name",
            "Account name must start with a letter (A-Z).",
        )
    return BASE_ACCOUNT_NUMBER + (ord(first_letter) - ord("A") + 1)

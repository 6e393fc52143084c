import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization and validation.

    Catalog data imported from spreadsheets often carries ISBNs with broken
    check digits, so the default check is on shape only; ``strict=True``
    also verifies the checksum.
    """

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str], strict: bool = False) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not (s[:9].isdigit() and (s[9].isdigit() or s[9] == "X")):
                return False
            if not strict:
                return True
            total = sum(i * int(ch) for i, ch in enumerate(s[:9], 1))
            check_val = 10 if s[9] == "X" else int(s[9])
            return (total + 10 * check_val) % 11 == 0
        if len(s) == 13 and s.isdigit():
            if not strict:
                return True
            total = sum((1 if i % 2 == 0 else 3) * int(ch) for i, ch in enumerate(s[:12]))
            return (10 - (total % 10)) % 10 == int(s[12])
        return False


class TextValidator:
    """Basic checks for free-text catalog and member fields."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        t = title.strip()
        return bool(t) and any(c.isalnum() for c in t)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return bool(email) and _EMAIL_RE.match(email.strip()) is not None

import re
from typing import Optional


class TextValidator:
    """Basic text validations and sanitization for catalog and account input."""

    @staticmethod
    def _is_non_empty_alpha(text: Optional[str]) -> bool:
        if text is None:
            return False
        t = text.strip()
        if not t:
            return False
        # allow spaces, letters and basic punctuation; reject purely numeric
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return TextValidator._is_non_empty_alpha(title)

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
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        cleaned = re.sub(r"<[^>]*>", "", text)
        cleaned = re.sub(r"(?i)script|onerror|onload|alert", "", cleaned)
        return cleaned.strip()


class CapacityValidator:
    """Copy count and price checks shared by the API models and the catalog."""

    @staticmethod
    def validate_new_total(total: Optional[int]) -> bool:
        # a new title needs at least one copy
        return isinstance(total, int) and not isinstance(total, bool) and total > 0

    @staticmethod
    def validate_capacity(total: Optional[int]) -> bool:
        return isinstance(total, int) and not isinstance(total, bool) and total >= 0

    @staticmethod
    def normalize_price(price) -> float:
        if price is None or price == "":
            return 0.0
        try:
            value = float(price)
        except (TypeError, ValueError):
            return 0.0
        return value if value >= 0 else 0.0

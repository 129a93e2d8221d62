"""
shared/utils/slug.py
URL slug generation for tour titles.
"""

import re
import unicodedata


def create_slug(title: str) -> str:
    """
    "Old Dhaka Food Walk!" -> "old-dhaka-food-walk".
    Uniqueness is not checked here; callers pre-check and the unique index
    on tours.slug is the final guard.
    """
    normalized = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug or "tour"

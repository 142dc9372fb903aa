from __future__ import annotations

import re
from typing import Optional

from .errors import InvalidShopDomain

SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")
_SCHEME_PATTERN = re.compile(r"^https?://")


def clean_shop_domain(raw: Optional[str]) -> Optional[str]:
    """Return the normalized `<shop>.myshopify.com` form, or None when invalid."""

    if not isinstance(raw, str):
        return None
    cleaned = raw.strip().lower()
    cleaned = _SCHEME_PATTERN.sub("", cleaned)
    if cleaned.endswith("/"):
        cleaned = cleaned[:-1]
    if not SHOP_DOMAIN_PATTERN.fullmatch(cleaned):
        return None
    return cleaned


def normalize_shop_domain(raw: Optional[str]) -> str:
    cleaned = clean_shop_domain(raw)
    if cleaned is None:
        raise InvalidShopDomain("shop domain must be a valid .myshopify.com domain")
    return cleaned

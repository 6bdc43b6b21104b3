"""
Intent helpers — opt-out detection and keyword fallback for short replies.

The keyword fallback is only used when the conversation already has a
product in play, so terse replies like "yes" or "link?" after an earlier
answer still resolve to something actionable.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

from models.schemas import Intent

_PRICE = re.compile(r"(how much|price|\$)")
_VARIANT = re.compile(r"(size|sizes|color|colours|variant|variants|options)")
_PURCHASE = re.compile(r"(buy|purchase|checkout|add to cart|take it|i'll take|ill take|send the link|link\??)")

AFFIRMATIVES = frozenset({"yes", "yeah", "yep", "ok", "okay", "sure", "please", "pls"})


def infer_intent_from_text(text: Optional[str]) -> Optional[str]:
    t = (text or "").strip().lower()
    if not t:
        return None
    if _PRICE.search(t):
        return Intent.PRICE_REQUEST.value
    if _VARIANT.search(t):
        return Intent.VARIANT_INQUIRY.value
    if _PURCHASE.search(t):
        return Intent.PURCHASE.value
    if t in AFFIRMATIVES:
        return Intent.PURCHASE.value
    return None


def is_opt_out(text: Optional[str], keywords: Iterable[str]) -> bool:
    """Substring match, case-insensitive."""
    lowered = (text or "").lower()
    return any(k.lower() in lowered for k in keywords if k)

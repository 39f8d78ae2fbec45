from __future__ import annotations

import re
from typing import Literal, Optional


ObjectionCategory = Literal["price", "time", "experience"]


# Checked in order; the first category with a contained phrase wins.
OBJECTION_KEYWORDS: tuple[tuple[ObjectionCategory, tuple[str, ...]], ...] = (
    (
        "price",
        (
            "expensive",
            "too costly",
            "cost too much",
            "costs too much",
            "can't afford",
            "cannot afford",
            "out of budget",
            "no money",
            "price is high",
        ),
    ),
    (
        "time",
        (
            "no time",
            "don't have time",
            "dont have time",
            "not enough time",
            "too busy",
            "very busy",
            "busy schedule",
        ),
    ),
    (
        "experience",
        (
            "no experience",
            "not experienced",
            "don't know coding",
            "never coded",
            "not technical",
            "non-tech",
            "non tech",
            "complete beginner",
        ),
    ),
)


OBJECTION_RESPONSES: dict[ObjectionCategory, str] = {
    "price": (
        "I totally get that cost is a big factor. That's exactly why the workshop is free - you can see "
        "if it's worth it before spending anything, and we do have scholarships and easy EMI options."
    ),
    "time": (
        "I hear you, time is tight for most of our learners too. The workshop is just about an hour, "
        "and if you miss anything we'll catch you up later. Would this evening work?"
    ),
    "experience": (
        "That makes sense, and honestly a lot of our learners started from zero. The workshop is "
        "beginner friendly - you'll learn by doing, no prior background needed."
    ),
}


BOOKING_PHRASES: tuple[str, ...] = (
    "book",
    "sign me up",
    "register",
    "reserve",
    "count me in",
    "enroll",
)


def classify_objection(text: str) -> Optional[ObjectionCategory]:
    txt = (text or "").lower()
    if not txt:
        return None
    for category, phrases in OBJECTION_KEYWORDS:
        if any(p in txt for p in phrases):
            return category
    return None


def deflection_for(category: ObjectionCategory) -> str:
    return OBJECTION_RESPONSES[category]


# Whole words only, with simple inflections: "booked" counts, "facebook" does not.
_BOOKING_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in BOOKING_PHRASES) + r")(?:s|d|ed|ing)?\b"
)


def is_booking_intent(text: str) -> bool:
    return _BOOKING_RE.search((text or "").lower()) is not None

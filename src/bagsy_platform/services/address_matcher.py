"""Fuzzy billing-vs-listing address matcher.

Pure-function module, NO database access.

Confidence is the sum of the weights of the fields that match:
    - ZIP     (40)  exact string equality
    - State   (20)  equality after normalisation
    - City    (20)  edit-distance similarity >= 0.85
    - Street  (20)  edit-distance similarity >= 0.80, matching by default
                    when either side has no street

An address pair is a match at confidence >= 60.
"""

from __future__ import annotations

import logging
import math
import re

from bagsy_platform.domain.errors import InvalidAddressError
from bagsy_platform.domain.schemas import Address, AddressMatchResult, FieldMatches

logger = logging.getLogger(__name__)

# ── Weights ──────────────────────────────────────────────────────────────────

W_ZIP = 40
W_STATE = 20
W_CITY = 20
W_STREET = 20

CITY_THRESHOLD = 0.85
STREET_THRESHOLD = 0.80
NEARBY_CITY_THRESHOLD = 0.90
MATCH_THRESHOLD = 60

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_STREET_SUFFIXES = re.compile(
    r"\b(street|st|avenue|ave|road|rd|drive|dr|lane|ln|boulevard|blvd|court|ct)\b"
)

_REQUIRED_FIELDS = ("city", "state", "zip_code")


# ── Normalisation / similarity ───────────────────────────────────────────────

def normalize(value: str, street: bool = False) -> str:
    """Lowercase, drop punctuation and collapse whitespace.

    Street suffix tokens are stripped only when ``street`` is set.
    """
    text = _PUNCTUATION.sub("", value.lower())
    if street:
        text = _STREET_SUFFIXES.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance; insert, delete and substitute all cost 1."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            if ca == cb:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j - 1], previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def similarity(a: str, b: str, street: bool = False) -> float:
    """``(max_len - distance) / max_len`` over normalised strings (0.0-1.0)."""
    s1 = normalize(a, street=street)
    s2 = normalize(b, street=street)
    if s1 == s2:
        return 1.0
    longest = max(len(s1), len(s2))
    return (longest - levenshtein(s1, s2)) / longest


def _percent(ratio: float) -> int:
    return math.floor(ratio * 100 + 0.5)


def validate_address(address: Address, which: str = "address") -> None:
    """Raise ``InvalidAddressError`` when city, state or zip_code is blank."""
    for field in _REQUIRED_FIELDS:
        value = getattr(address, field)
        if value is None or not str(value).strip():
            raise InvalidAddressError(field, which=which)


# ── Public API ───────────────────────────────────────────────────────────────

def verify_address_match(billing: Address, listing: Address) -> AddressMatchResult:
    """Score how closely a billing address matches a listing address.

    Raises:
        InvalidAddressError: city, state or zip_code is missing on either side.
    """
    validate_address(billing, "billing address")
    validate_address(listing, "listing address")

    warnings: list[str] = []

    zip_match = billing.zip_code == listing.zip_code
    if not zip_match:
        warnings.append("ZIP codes do not match")

    state_match = normalize(billing.state) == normalize(listing.state)
    if not state_match:
        warnings.append("States do not match")

    city_similarity = similarity(billing.city, listing.city)
    city_match = city_similarity >= CITY_THRESHOLD
    if not city_match:
        warnings.append(
            f"Cities do not match closely ({_percent(city_similarity)}% similar)"
        )

    if billing.street and listing.street:
        street_similarity = similarity(billing.street, listing.street, street=True)
        street_match = street_similarity >= STREET_THRESHOLD
        if not street_match:
            warnings.append(
                f"Street addresses do not match closely ({_percent(street_similarity)}% similar)"
            )
    else:
        street_match = True

    confidence = (
        (W_ZIP if zip_match else 0)
        + (W_STATE if state_match else 0)
        + (W_CITY if city_match else 0)
        + (W_STREET if street_match else 0)
    )
    is_match = confidence >= MATCH_THRESHOLD

    suggestion = None
    if not is_match:
        if not zip_match:
            suggestion = "Verify that your billing ZIP code matches your listing location"
        elif not state_match:
            suggestion = "Your billing state does not match your listing state"
        elif not city_match:
            suggestion = "Your billing city does not closely match your listing city"
        else:
            suggestion = "Your billing address does not closely match your listing address"

    logger.debug(
        "Address match: confidence=%d match=%s warnings=%d",
        confidence,
        is_match,
        len(warnings),
    )

    return AddressMatchResult(
        is_match=is_match,
        confidence=confidence,
        matches=FieldMatches(
            street=street_match,
            city=city_match,
            state=state_match,
            zip_code=zip_match,
        ),
        warnings=warnings,
        suggestion=suggestion,
    )


def addresses_nearby(a: Address, b: Address) -> bool:
    """Same ZIP, or same state with near-identical city."""
    if a.zip_code == b.zip_code:
        return True
    return (
        normalize(a.state or "") == normalize(b.state or "")
        and similarity(a.city or "", b.city or "") >= NEARBY_CITY_THRESHOLD
    )


def describe_match(result: AddressMatchResult) -> tuple[str, str, str]:
    """Return a ``(title, description, variant)`` summary of a match result."""
    if result.is_match and result.confidence >= 80:
        return (
            "Address Verified",
            "Your billing address matches your listing location",
            "success",
        )
    if result.is_match:
        return (
            "Partial Match",
            result.suggestion or "Addresses are similar but not identical",
            "warning",
        )
    return (
        "Address Mismatch",
        result.suggestion or "Billing and listing addresses do not match",
        "destructive",
    )

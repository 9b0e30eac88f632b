"""Fingerprint extraction: listing -> comparable features + blocking key.

Everything here is a pure function of a single ``Listing``.  Fields that
cannot be normalised come back as ``None`` so the scorer can treat them as
"no signal" rather than a mismatch.
"""

from __future__ import annotations

import math
import re

from unidecode import unidecode

from dealsift.dedup.models import BlockingKey, FeatureVector, Listing

# ---------------------------------------------------------------------------
# Patterns (legal suffixes are only stripped from the end of a title)
# ---------------------------------------------------------------------------

_SUFFIX_PATTERN = re.compile(
    r"[\s,]*\b("
    r"limited|ltd|inc|incorporated|llc|l\.l\.c\.|"
    r"corp|corporation|co|company"
    r")\.?\s*$",
    re.IGNORECASE,
)

_APOSTROPHES = re.compile(r"['’`]")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"\D")

_STREET_ABBREVIATIONS: dict[str, str] = {
    "street": "st",
    "avenue": "ave",
    "road": "rd",
    "boulevard": "blvd",
    "drive": "dr",
    "lane": "ln",
    "court": "ct",
    "place": "pl",
    "highway": "hwy",
    "parkway": "pkwy",
    "suite": "ste",
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
}

_US_STATES: dict[str, str] = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}
_STATE_CODES = frozenset(_US_STATES.values())

# Ten price bands per order of magnitude (~26% wide each)
PRICE_BANDS_PER_DECADE = 10


# ---------------------------------------------------------------------------
# Text normalisation
# ---------------------------------------------------------------------------

def _clean_text(text: str) -> str:
    """Transliterate, lowercase, drop punctuation and collapse whitespace."""
    text = unidecode(text).lower()
    text = _APOSTROPHES.sub("", text)
    text = _NON_ALNUM.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_title(title: str | None) -> tuple[str, ...]:
    """Normalise a listing title into an ordered tuple of tokens.

    Steps:
      1. Transliterate Unicode to ASCII and lowercase.
      2. Strip trailing legal suffixes (LLC, Inc, Corp, ...) repeatedly,
         so "Foo Co Inc" loses both.
      3. Drop apostrophes ("Joe's" -> "joes"); other punctuation becomes
         whitespace.
      4. Collapse whitespace and split.
    """
    if not title:
        return ()

    text = unidecode(title).lower().strip()
    while True:
        stripped = _SUFFIX_PATTERN.sub("", text).strip()
        if stripped == text or not stripped:
            break
        text = stripped

    cleaned = _clean_text(text)
    return tuple(cleaned.split()) if cleaned else ()


def normalize_address(address: str | None) -> str | None:
    """Normalise a street address for exact comparison."""
    if not address:
        return None
    cleaned = _clean_text(address)
    if not cleaned:
        return None
    return " ".join(_STREET_ABBREVIATIONS.get(tok, tok) for tok in cleaned.split())


def normalize_phone(phone: str | None) -> str | None:
    """Reduce a phone number to its digits.

    A leading US country code is dropped from 11-digit numbers.  Anything
    shorter than seven digits is not a usable phone number.
    """
    if not phone:
        return None
    digits = _NON_DIGIT.sub("", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    return digits if len(digits) >= 7 else None


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    email = email.strip().lower()
    return email if "@" in email else None


def normalize_state(state: str | None) -> str | None:
    """Map a state name or code to its two-letter USPS code."""
    if not state:
        return None
    text = _clean_text(state)
    if not text:
        return None
    if text.upper() in _STATE_CODES:
        return text.upper()
    return _US_STATES.get(text, text.upper())


def normalize_category(category: str | None) -> str | None:
    if not category:
        return None
    text = _WHITESPACE.sub(" ", category.strip().lower())
    return text or None


def normalize_amount(value: float | int | None) -> float | None:
    """Financial amounts must be positive and finite to carry signal."""
    if value is None:
        return None
    amount = float(value)
    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


# ---------------------------------------------------------------------------
# Blocking
# ---------------------------------------------------------------------------

def price_band(price: float | None) -> int | None:
    """Logarithmic price bucket; adjacent bands are compared during blocking."""
    amount = normalize_amount(price)
    if amount is None:
        return None
    return math.floor(PRICE_BANDS_PER_DECADE * math.log10(amount))


def blocking_key(listing: Listing) -> BlockingKey:
    """Return the ``(state, category, price_band)`` bucket for *listing*."""
    return BlockingKey(
        state=normalize_state(listing.state),
        category=normalize_category(listing.category),
        price_band=price_band(listing.asking_price),
    )


def keys_compatible(a: BlockingKey, b: BlockingKey) -> bool:
    """Decide whether two blocking buckets should be compared.

    State and category must agree; price bands may differ by one so that
    near-equal prices straddling a band edge still meet.  An unknown
    component on either side matches anything.
    """
    if a.state is not None and b.state is not None and a.state != b.state:
        return False
    if a.category is not None and b.category is not None and a.category != b.category:
        return False
    if a.price_band is not None and b.price_band is not None:
        return abs(a.price_band - b.price_band) <= 1
    return True


# ---------------------------------------------------------------------------
# Feature extraction
# ---------------------------------------------------------------------------

def extract_features(listing: Listing) -> FeatureVector:
    """Build the comparable feature vector for *listing*."""
    return FeatureVector(
        listing_id=listing.id,
        platform=listing.platform,
        title_tokens=normalize_title(listing.title),
        address=normalize_address(listing.address),
        asking_price=normalize_amount(listing.asking_price),
        revenue=normalize_amount(listing.revenue),
        ebitda=normalize_amount(listing.ebitda),
        broker_phone=normalize_phone(listing.broker_phone),
        broker_email=normalize_email(listing.broker_email),
        blocking_key=blocking_key(listing),
    )

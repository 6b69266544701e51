"""Jurisdiction-based legal compliance classifier for space rentals.

Maps a free-text location onto {state, county, city} by keyword matching,
looks up the county override or the state default in a regulation table,
and classifies the result as allowed / restricted / prohibited. Anything
that goes wrong while resolving degrades to ``pending``.

The regulation table is passed to ``ComplianceClassifier`` at construction
time; the module-level tables below are only the built-in defaults.
"""

import logging
import re
from datetime import datetime, timezone

from bagsy_platform.domain.enums import ComplianceStatus
from bagsy_platform.domain.schemas import ComplianceResult, JurisdictionRule, StateRegulations

logger = logging.getLogger(__name__)

UNKNOWN_STATE = "Unknown"

# More than this many listed restrictions makes a location "restricted"
MAX_UNRESTRICTED_RESTRICTIONS = 2

PENDING_NOTE = "Unable to verify legal compliance. Please consult local regulations."

DEFAULT_SOURCE = "https://www.usa.gov/state-local-governments"


# ---------------------------------------------------------------------------
# Built-in regulation data
# ---------------------------------------------------------------------------

DEFAULT_REGULATIONS: dict[str, StateRegulations] = {
    "California": StateRegulations(
        default=JurisdictionRule(
            restrictions=["Must comply with local zoning laws", "Insurance required"],
            notes="State allows driveway rentals, but check local ordinances",
        ),
        counties={
            "San Francisco": JurisdictionRule(
                requires_permit=True,
                permit_url="https://sfplanning.org/short-term-rentals",
                restrictions=["Business registration required", "Cannot exceed 90 days/year"],
                max_days=90,
                notes="San Francisco requires registration for all short-term rentals",
            ),
            "Los Angeles": JurisdictionRule(
                requires_permit=True,
                permit_url="https://planning.lacity.org/short-term-rentals",
                restrictions=["Primary residence only", "TOT tax collection required"],
                notes="Los Angeles has strict short-term rental regulations",
            ),
        },
    ),
    "New York": StateRegulations(
        default=JurisdictionRule(
            restrictions=["Must comply with Multiple Dwelling Law"],
            notes="New York allows parking space rentals with proper zoning",
        ),
        counties={
            "New York": JurisdictionRule(
                requires_permit=True,
                restrictions=[
                    "Commercial parking license may be required",
                    "Zoning approval needed",
                ],
                notes="NYC requires commercial parking operation permits for regular rentals",
            ),
        },
    ),
    "Texas": StateRegulations(
        default=JurisdictionRule(
            notes="Texas is generally permissive for property rights including driveway rentals",
        ),
    ),
    "Florida": StateRegulations(
        default=JurisdictionRule(
            restrictions=["Local HOA rules may apply"],
            notes="Florida allows driveway rentals, check HOA restrictions",
        ),
    ),
    "Washington": StateRegulations(
        default=JurisdictionRule(
            restrictions=["Business license may be required"],
            notes="Washington state allows parking rentals with proper business registration",
        ),
    ),
}

# Scanned in order; the first state with a matching token wins.
STATE_PATTERNS: list[tuple[str, list[str]]] = [
    ("California", ["california", "ca", "san francisco", "los angeles", "san diego"]),
    ("New York", ["new york", "ny", "nyc", "manhattan", "brooklyn"]),
    ("Texas", ["texas", "tx", "houston", "dallas", "austin"]),
    ("Florida", ["florida", "fl", "miami", "tampa", "orlando"]),
    ("Washington", ["washington", "wa", "seattle", "spokane"]),
    ("Illinois", ["illinois", "il", "chicago"]),
    ("Pennsylvania", ["pennsylvania", "pa", "philadelphia"]),
    ("Arizona", ["arizona", "az", "phoenix"]),
    ("Massachusetts", ["massachusetts", "ma", "boston"]),
    ("Georgia", ["georgia", "ga", "atlanta"]),
]

# (tokens, county, city)
COUNTY_PATTERNS: list[tuple[list[str], str, str]] = [
    (["san francisco"], "San Francisco", "San Francisco"),
    (["los angeles"], "Los Angeles", "Los Angeles"),
    (["new york", "nyc"], "New York", "New York City"),
]

STATE_SOURCES: dict[str, list[str]] = {
    "California": ["https://leginfo.legislature.ca.gov", "https://www.hcd.ca.gov"],
    "New York": ["https://www.nyc.gov/site/buildings", "https://www.dos.ny.gov"],
    "Texas": ["https://www.tdlr.texas.gov"],
    "Florida": ["https://www.myfloridalicense.com"],
    "Washington": ["https://www.commerce.wa.gov"],
}

# Inclusive 3-digit ZIP prefix ranges, consulted when the text names no state.
ZIP_PREFIX_STATES: list[tuple[int, int, str]] = [
    (10, 27, "Massachusetts"),
    (100, 149, "New York"),
    (150, 196, "Pennsylvania"),
    (300, 319, "Georgia"),
    (320, 349, "Florida"),
    (398, 399, "Georgia"),
    (600, 629, "Illinois"),
    (750, 799, "Texas"),
    (850, 865, "Arizona"),
    (885, 885, "Texas"),
    (900, 961, "California"),
    (980, 994, "Washington"),
]


def _token_regex(tokens: list[str]) -> re.Pattern:
    return re.compile(r"\b(" + "|".join(re.escape(t) for t in tokens) + r")\b")


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class ComplianceClassifier:
    """Classifies a location's short-term rental legality."""

    def __init__(
        self,
        regulations: dict[str, StateRegulations] | None = None,
        state_patterns: list[tuple[str, list[str]]] | None = None,
        sources: dict[str, list[str]] | None = None,
        zip_prefixes: list[tuple[int, int, str]] | None = None,
    ):
        self.regulations = regulations if regulations is not None else DEFAULT_REGULATIONS
        self.sources = sources if sources is not None else STATE_SOURCES
        self.zip_prefixes = zip_prefixes if zip_prefixes is not None else ZIP_PREFIX_STATES
        self._state_patterns = [
            (state, _token_regex(tokens))
            for state, tokens in (state_patterns if state_patterns is not None else STATE_PATTERNS)
        ]
        self._county_patterns = [
            (_token_regex(tokens), county, city) for tokens, county, city in COUNTY_PATTERNS
        ]

    def check_compliance(self, address: str, zip_code: str | None = None) -> ComplianceResult:
        """Classify the location described by ``address``.

        Never raises: resolution failures return a ``pending`` result.
        """
        try:
            state, county, city = self.parse_location(address, zip_code)
            rule = self.lookup_rule(state, county)
            status = self.classify(rule)
            result = ComplianceResult(
                status=status,
                state=state,
                county=county,
                city=city,
                details=rule,
                sources=self.sources.get(state, [DEFAULT_SOURCE]),
                last_updated=datetime.now(timezone.utc),
            )
            logger.info(
                "Compliance check: state=%s county=%s status=%s",
                state,
                county,
                status.value,
            )
            return result
        except Exception as exc:
            logger.warning("Compliance check failed for %r: %s", address, exc)
            return ComplianceResult(
                status=ComplianceStatus.PENDING,
                state=UNKNOWN_STATE,
                details=JurisdictionRule(
                    short_term_rental_allowed=False,
                    requires_permit=False,
                    notes=PENDING_NOTE,
                ),
                last_updated=datetime.now(timezone.utc),
            )

    def parse_location(
        self, address: str, zip_code: str | None = None
    ) -> tuple[str, str | None, str | None]:
        """Return ``(state, county, city)`` for a free-text address."""
        text = address.lower()

        state = UNKNOWN_STATE
        for candidate, pattern in self._state_patterns:
            if pattern.search(text):
                state = candidate
                break

        if state == UNKNOWN_STATE:
            state = self._state_from_zip(zip_code) or UNKNOWN_STATE
            return state, None, None

        for pattern, county, city in self._county_patterns:
            if pattern.search(text):
                return state, county, city
        return state, None, None

    def lookup_rule(self, state: str, county: str | None = None) -> JurisdictionRule:
        regs = self.regulations.get(state)
        if regs is None:
            return JurisdictionRule(
                notes=f"No specific regulations found for {state}. Check with local authorities.",
            )
        if county and county in regs.counties:
            return regs.counties[county]
        return regs.default

    @staticmethod
    def classify(rule: JurisdictionRule) -> ComplianceStatus:
        if not rule.short_term_rental_allowed:
            return ComplianceStatus.PROHIBITED
        if rule.requires_permit or len(rule.restrictions) > MAX_UNRESTRICTED_RESTRICTIONS:
            return ComplianceStatus.RESTRICTED
        return ComplianceStatus.ALLOWED

    def _state_from_zip(self, zip_code: str | None) -> str | None:
        if not zip_code:
            return None
        digits = zip_code.strip()[:3]
        if len(digits) < 3 or not digits.isdigit():
            return None
        prefix = int(digits)
        for low, high, state in self.zip_prefixes:
            if low <= prefix <= high:
                return state
        return None

"""Unit tests for the jurisdiction compliance classifier."""

from unittest.mock import patch

import pytest

from bagsy_platform.domain.enums import ComplianceStatus
from bagsy_platform.domain.schemas import JurisdictionRule, StateRegulations
from bagsy_platform.services.compliance_classifier import (
    DEFAULT_SOURCE,
    PENDING_NOTE,
    ComplianceClassifier,
)


@pytest.fixture
def classifier():
    return ComplianceClassifier()


class TestLocationParsing:
    @pytest.mark.parametrize(
        "address,expected",
        [
            ("123 Market St, San Francisco, CA 94103", ("California", "San Francisco", "San Francisco")),
            ("500 Sunset Blvd, Los Angeles, CA", ("California", "Los Angeles", "Los Angeles")),
            ("10 W 42nd St, New York, NY 10036", ("New York", "New York", "New York City")),
            ("42 Elm St, Austin, TX 78701", ("Texas", None, None)),
            ("9 Ocean Dr, Miami, FL", ("Florida", None, None)),
        ],
    )
    def test_state_and_county(self, classifier, address, expected):
        assert classifier.parse_location(address) == expected

    def test_tokens_match_whole_words_only(self, classifier):
        # "Main" must not be read as Massachusetts' "ma"
        assert classifier.parse_location("1 Main Street, Springfield")[0] == "Unknown"

    def test_first_state_in_table_order_wins(self, classifier):
        assert classifier.parse_location("Texas Ave, Seattle, WA")[0] == "Texas"

    def test_zip_prefix_fallback(self, classifier):
        assert classifier.parse_location("1 Main Street, Springfield", "60601")[0] == "Illinois"
        assert classifier.parse_location("1 Main Street, Springfield", "00501")[0] == "Unknown"


class TestClassification:
    def test_permit_required_is_restricted(self, classifier):
        result = classifier.check_compliance("123 Market St, San Francisco, CA 94103")
        assert result.status == ComplianceStatus.RESTRICTED
        assert result.details.max_days == 90
        assert result.sources == ["https://leginfo.legislature.ca.gov", "https://www.hcd.ca.gov"]

    def test_state_default_with_two_restrictions_is_allowed(self, classifier):
        result = classifier.check_compliance("1 Palm Way, San Diego, CA")
        assert result.county is None
        assert len(result.details.restrictions) == 2
        assert result.status == ComplianceStatus.ALLOWED

    def test_texas_is_allowed(self, classifier):
        result = classifier.check_compliance("42 Elm St, Austin, TX 78701")
        assert result.status == ComplianceStatus.ALLOWED
        assert result.state == "Texas"

    def test_known_state_without_regulations_is_allowed_with_note(self, classifier):
        result = classifier.check_compliance("1 Lake Shore Dr, Chicago, IL")
        assert result.status == ComplianceStatus.ALLOWED
        assert result.details.notes == (
            "No specific regulations found for Illinois. Check with local authorities."
        )
        assert result.sources == [DEFAULT_SOURCE]

    @pytest.mark.parametrize(
        "rule,expected",
        [
            (JurisdictionRule(short_term_rental_allowed=False), ComplianceStatus.PROHIBITED),
            (JurisdictionRule(requires_permit=True), ComplianceStatus.RESTRICTED),
            (JurisdictionRule(restrictions=["a", "b", "c"]), ComplianceStatus.RESTRICTED),
            (JurisdictionRule(restrictions=["a", "b"]), ComplianceStatus.ALLOWED),
            (JurisdictionRule(), ComplianceStatus.ALLOWED),
        ],
    )
    def test_classify(self, rule, expected):
        assert ComplianceClassifier.classify(rule) == expected

    def test_injected_regulations_table(self):
        classifier = ComplianceClassifier(
            regulations={
                "Texas": StateRegulations(
                    default=JurisdictionRule(short_term_rental_allowed=False, notes="Banned here")
                )
            }
        )
        result = classifier.check_compliance("42 Elm St, Austin, TX")
        assert result.status == ComplianceStatus.PROHIBITED


class TestDegradation:
    def test_resolution_failure_is_pending(self, classifier):
        with patch.object(classifier, "parse_location", side_effect=RuntimeError("boom")):
            result = classifier.check_compliance("anywhere")
        assert result.status == ComplianceStatus.PENDING
        assert result.state == "Unknown"
        assert result.details.short_term_rental_allowed is False
        assert result.details.notes == PENDING_NOTE

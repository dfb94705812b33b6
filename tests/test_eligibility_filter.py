"""Unit tests for the eligibility filter."""

from types import SimpleNamespace

import pytest

from greia_platform.domain.enums import RequestType
from greia_platform.services.eligibility_filter import (
    INACTIVE,
    MIN_RATING,
    MIN_VOLUME,
    NOT_VERIFIED,
    REGION,
    SELF_MATCH,
    SPECIALIZATION,
    EligibilityFilter,
    covers_region,
)
from greia_platform.services.request_policies import get_policy


def _candidate(candidate_id="agent-1", **kwargs):
    defaults = {
        "id": candidate_id,
        "verified": True,
        "active": True,
        "regions": ["North Dublin"],
        "specializations": ["residential"],
        "rating": 4.5,
        "total_deals": 10,
        "total_valuations": 10,
        "total_bookings": 0,
    }
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


def _request(request_type=RequestType.PROPERTY_SUBMISSION, **kwargs):
    defaults = {
        "request_type": request_type.value,
        "requester_id": "requester-1",
        "category": "residential",
        "region": "North Dublin",
    }
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


@pytest.fixture
def wildcards(settings):
    return settings.wildcard_region_map


def _filter(request_type, settings, wildcards):
    return EligibilityFilter(get_policy(request_type, settings), wildcards)


class TestRegion:
    def test_direct_match_is_case_insensitive(self, wildcards):
        assert covers_region(["north dublin"], "North Dublin", wildcards)

    def test_wildcard_subsumes_sub_region(self, wildcards):
        assert covers_region(["Dublin"], "South Dublin", wildcards)

    def test_wildcard_does_not_cover_other_counties(self, wildcards):
        assert not covers_region(["Dublin"], "Cork", wildcards)

    def test_sub_region_does_not_cover_sibling(self, wildcards):
        assert not covers_region(["North Dublin"], "South Dublin", wildcards)

    def test_no_regions(self, wildcards):
        assert not covers_region([], "North Dublin", wildcards)


class TestPredicates:
    def test_fully_qualified_candidate_passes(self, settings, wildcards):
        f = _filter(RequestType.PROPERTY_SUBMISSION, settings, wildcards)
        assert f.failures(_request(), _candidate()) == []

    def test_reports_every_failed_predicate(self, settings, wildcards):
        f = _filter(RequestType.PROPERTY_SUBMISSION, settings, wildcards)
        candidate = _candidate(
            verified=False, active=False, regions=["Galway"], specializations=["commercial"]
        )
        assert f.failures(_request(), candidate) == [NOT_VERIFIED, INACTIVE, REGION, SPECIALIZATION]

    def test_requester_never_matches_own_request(self, settings, wildcards):
        f = _filter(RequestType.PROPERTY_SUBMISSION, settings, wildcards)
        assert SELF_MATCH in f.failures(_request(), _candidate("requester-1"))

    def test_specialization_not_required_for_valuation(self, settings, wildcards):
        f = _filter(RequestType.VALUATION, settings, wildcards)
        candidate = _candidate(specializations=[], rating=4.5, total_valuations=8)
        assert f.failures(_request(RequestType.VALUATION), candidate) == []

    def test_specialization_required_for_referral(self, settings, wildcards):
        f = _filter(RequestType.REFERRAL, settings, wildcards)
        candidate = _candidate(specializations=["land"])
        assert f.failures(_request(RequestType.REFERRAL), candidate) == [SPECIALIZATION]

    def test_booking_has_no_numeric_floor(self, settings, wildcards):
        f = _filter(RequestType.BOOKING, settings, wildcards)
        candidate = _candidate(rating=0.0, total_bookings=0, specializations=[])
        assert f.failures(_request(RequestType.BOOKING, category="photography"), candidate) == []


class TestValuationThresholds:
    def test_low_volume_excluded_high_rated_veteran_included(self, settings, wildcards):
        f = _filter(RequestType.VALUATION, settings, wildcards)
        novice = _candidate("novice", rating=4.6, total_valuations=3)
        veteran = _candidate("veteran", rating=4.9, total_valuations=12)

        result = f.evaluate(_request(RequestType.VALUATION), [novice, veteran])

        assert [c.id for c in result.eligible] == ["veteran"]
        assert result.excluded == {"novice": [MIN_VOLUME]}

    def test_rating_floor(self, settings, wildcards):
        f = _filter(RequestType.VALUATION, settings, wildcards)
        candidate = _candidate(rating=3.9, total_valuations=50)
        assert f.failures(_request(RequestType.VALUATION), candidate) == [MIN_RATING]

    def test_thresholds_are_inclusive(self, settings, wildcards):
        f = _filter(RequestType.VALUATION, settings, wildcards)
        candidate = _candidate(rating=4.0, total_valuations=5)
        assert f.failures(_request(RequestType.VALUATION), candidate) == []


class TestFilterBehaviour:
    def test_empty_result_is_not_an_error(self, settings, wildcards):
        f = _filter(RequestType.PROPERTY_SUBMISSION, settings, wildcards)
        result = f.evaluate(_request(region="Kerry"), [_candidate()])
        assert result.is_empty
        assert f.filter(_request(region="Kerry"), [_candidate()]) == []

    def test_removing_a_region_never_adds_candidates(self, settings, wildcards):
        f = _filter(RequestType.PROPERTY_SUBMISSION, settings, wildcards)
        request = _request(region="South Dublin")
        full = _candidate("a", regions=["Dublin", "South Dublin", "Cork"])
        eligible_before = {c.id for c in f.filter(request, [full])}

        for dropped in full.regions:
            reduced = _candidate("a", regions=[r for r in full.regions if r != dropped])
            eligible_after = {c.id for c in f.filter(request, [reduced])}
            assert eligible_after <= eligible_before

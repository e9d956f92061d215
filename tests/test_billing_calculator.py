import math
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from billing_api.services.billing_calculator import (
    EnrollmentRecord,
    calculate_lagged_policy,
    calculate_prorata_policy,
    premium_for_tier,
    round_money,
)
from billing_api.services.billing_dates import get_adjustment_window, parse_billing_period


POLICY_ID = uuid.uuid4()
# Billing February 2025 with cutoff day 15: base at 2025-01-15,
# adjustments for (2024-12-15, 2025-01-15]
WINDOW = get_adjustment_window("2025-02", 15)


def _utc(year, month, day, hour=0):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def _policy(t="500.00", tplus1="800.00", tplusf=None):
    return SimpleNamespace(
        id=POLICY_ID,
        policy_number="POL-001",
        t_premium=Decimal(t) if t else None,
        tplus1_premium=Decimal(tplus1) if tplus1 else None,
        tplusf_premium=Decimal(tplusf) if tplusf else None,
    )


def _owner(added_at, removed_at=None, tier="T", **kwargs):
    return EnrollmentRecord(
        policy_id=POLICY_ID,
        affiliate_id=uuid.uuid4(),
        affiliate_name="Ana Owner",
        coverage_type=tier,
        added_at=added_at,
        removed_at=removed_at,
        **kwargs,
    )


# =============================================================================
# Model B: T+1 lagged
# =============================================================================

def test_joined_owner_is_prorated_for_rest_of_join_month():
    joiner = _owner(_utc(2025, 1, 10))

    result = calculate_lagged_policy(_policy(), WINDOW, [joiner], [joiner])

    [adjustment] = result.breakdown["adjustments"]
    assert adjustment["type"] == "JOINED"
    assert adjustment["coverage_days"] == 22
    assert adjustment["amount"] == 354.84
    assert adjustment["activity_date"] == "2025-01-10"
    assert result.breakdown["base"]["amount"] == 500.0
    assert result.expected_amount == Decimal("854.84")
    assert result.expected_affiliate_count == 1


def test_join_timestamp_uses_utc_calendar_day():
    # 23:30 on Jan 9 in UTC-5 is Jan 10 in UTC
    joiner = _owner(datetime(2025, 1, 9, 23, 30, tzinfo=timezone(timedelta(hours=-5))))

    result = calculate_lagged_policy(_policy(), WINDOW, [], [joiner])

    assert result.breakdown["adjustments"][0]["coverage_days"] == 22


def test_left_owner_is_credited_for_unused_days():
    leaver = _owner(_utc(2024, 6, 1), removed_at=_utc(2024, 12, 20))
    staying = [_owner(_utc(2024, 6, 1)), _owner(_utc(2024, 6, 1))]

    result = calculate_lagged_policy(_policy(), WINDOW, staying, [leaver])

    [adjustment] = result.breakdown["adjustments"]
    assert adjustment["type"] == "LEFT"
    assert adjustment["coverage_days"] == 20
    assert adjustment["amount"] == -177.42
    assert result.expected_amount == Decimal("822.58")


def test_removal_on_last_day_of_month_credits_nothing():
    leaver = _owner(_utc(2024, 6, 1), removed_at=_utc(2024, 12, 31))

    result = calculate_lagged_policy(_policy(), WINDOW, [], [leaver])

    [adjustment] = result.breakdown["adjustments"]
    assert adjustment["type"] == "LEFT"
    assert adjustment["coverage_days"] == 31
    assert math.copysign(1, adjustment["amount"]) == 1.0
    assert not result.expected_amount.is_signed()


def test_joined_and_left_in_window_charges_covered_days():
    owner = _owner(_utc(2024, 12, 20), removed_at=_utc(2025, 1, 5))

    result = calculate_lagged_policy(_policy(), WINDOW, [], [owner])

    [adjustment] = result.breakdown["adjustments"]
    assert adjustment["type"] == "JOINED_AND_LEFT"
    assert adjustment["coverage_days"] == 17
    assert adjustment["amount"] == 274.19
    assert result.expected_affiliate_count == 0


def test_tier_change_credits_old_tier_and_charges_new_tier():
    owner = _owner(
        _utc(2024, 6, 1),
        tier="TPLUS1",
        previous_coverage_type="T",
        tier_changed_at=_utc(2025, 1, 10),
    )

    result = calculate_lagged_policy(_policy(), WINDOW, [owner], [], [owner])

    [adjustment] = result.breakdown["adjustments"]
    assert adjustment["type"] == "TIER_CHANGED"
    assert adjustment["old_tier"] == "T"
    assert adjustment["new_tier"] == "TPLUS1"
    assert adjustment["coverage_days"] == 22
    assert adjustment["amount"] == 212.90
    assert result.breakdown["base"]["by_tier"]["TPLUS1"] == {"count": 1, "amount": 800.0}
    assert result.expected_amount == Decimal("1012.90")


def test_activity_outside_window_is_ignored():
    before_window = _owner(_utc(2024, 12, 15, 12))
    after_window = _owner(_utc(2025, 1, 16))

    result = calculate_lagged_policy(_policy(), WINDOW, [], [before_window, after_window])

    assert result.breakdown["adjustments"] == []
    assert result.expected_amount == Decimal("0.00")


def test_expected_count_is_base_count_regardless_of_adjustments():
    base = [_owner(_utc(2024, 6, 1)), _owner(_utc(2024, 6, 1), tier="TPLUS1")]
    window_owners = [
        _owner(_utc(2025, 1, 2)),
        _owner(_utc(2024, 6, 1), removed_at=_utc(2024, 12, 31)),
        _owner(_utc(2024, 12, 16), removed_at=_utc(2024, 12, 18)),
    ]

    result = calculate_lagged_policy(_policy(), WINDOW, base, window_owners)

    assert len(result.breakdown["adjustments"]) == 3
    assert result.expected_affiliate_count == result.breakdown["base"]["count"] == 2


def test_owners_without_tier_or_premium_are_skipped_and_listed():
    no_tier = _owner(_utc(2024, 6, 1), tier=None)
    no_premium = _owner(_utc(2024, 6, 1), tier="TPLUSF")
    priced = _owner(_utc(2024, 6, 1))

    result = calculate_lagged_policy(_policy(), WINDOW, [no_tier, no_premium, priced], [])

    reasons = {entry["affiliate_id"]: entry["reason"] for entry in result.breakdown["skipped"]}
    assert reasons == {
        str(no_tier.affiliate_id): "missing_tier",
        str(no_premium.affiliate_id): "missing_premium",
    }
    assert result.expected_affiliate_count == 1
    assert result.expected_amount == Decimal("500.00")


def test_lagged_breakdown_shape():
    result = calculate_lagged_policy(_policy(), WINDOW, [_owner(_utc(2024, 6, 1))], [])

    breakdown = result.breakdown
    assert breakdown["model"] == "lagged"
    assert breakdown["base_cutoff"] == "2025-01-15"
    assert breakdown["window_start"] == "2024-12-15"
    assert breakdown["window_end"] == "2025-01-15"
    assert set(breakdown["base"]["by_tier"]) == {"T", "TPLUS1", "TPLUSF"}
    assert breakdown["adjustments_total"] == 0.0
    assert breakdown["total"] == 500.0


# =============================================================================
# Model A: direct pro-rata
# =============================================================================

def test_prorata_splits_full_and_partial_owners_by_tier():
    period = parse_billing_period("2025-02")
    owners = [
        _owner(_utc(2024, 6, 1)),
        _owner(_utc(2025, 2, 15), tier="TPLUS1"),
        _owner(_utc(2024, 6, 1), removed_at=_utc(2025, 2, 7)),
        _owner(_utc(2024, 6, 1), removed_at=_utc(2025, 1, 20)),
    ]

    result = calculate_prorata_policy(_policy(), period, owners)

    by_tier = result.breakdown["by_tier"]
    assert by_tier["T"] == {"full_period": 1, "pro_rated": 1, "count": 2, "amount": 625.0}
    assert by_tier["TPLUS1"] == {"full_period": 0, "pro_rated": 1, "count": 1, "amount": 400.0}
    assert result.expected_amount == Decimal("1025.00")
    assert result.expected_affiliate_count == 3
    assert result.breakdown["model"] == "prorata"


def test_prorata_rounds_per_tier_not_per_owner():
    period = parse_billing_period("2025-01")
    owners = [_owner(_utc(2025, 1, 22)) for _ in range(3)]

    result = calculate_prorata_policy(_policy(t="100.00"), period, owners)

    assert result.breakdown["by_tier"]["T"]["amount"] == 96.77
    assert result.expected_amount == Decimal("96.77")


def test_prorata_total_equals_sum_of_tier_amounts():
    period = parse_billing_period("2024-02")
    owners = [
        _owner(_utc(2024, 2, day), tier=tier)
        for day, tier in [(3, "T"), (11, "TPLUS1"), (17, "TPLUSF"), (29, "T"), (1, "TPLUS1")]
    ]

    result = calculate_prorata_policy(_policy(tplusf="1333.33"), period, owners)

    tier_sum = sum(Decimal(str(bucket["amount"])) for bucket in result.breakdown["by_tier"].values())
    assert result.expected_amount == round_money(tier_sum)


# =============================================================================
# Helpers
# =============================================================================

@pytest.mark.parametrize(
    "tier,expected",
    [("T", Decimal("500.00")), ("TPLUS1", Decimal("800.00")), ("TPLUSF", None), ("GOLD", None), (None, None)],
)
def test_premium_for_tier(tier, expected):
    assert premium_for_tier(_policy(), tier) == expected


def test_round_money_is_half_up():
    assert round_money(Decimal("0.005")) == Decimal("0.01")
    assert round_money(Decimal("354.8387")) == Decimal("354.84")
    assert round_money(Decimal("-177.415")) == Decimal("-177.42")

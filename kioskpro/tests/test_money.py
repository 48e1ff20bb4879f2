from decimal import Decimal

from kioskpro.app.money import money, pct, pct_change, share_percentages


def test_money_rounds_half_up_to_cents():
    assert money("2.005") == Decimal("2.01")
    assert money(None) == Decimal("0.00")
    assert money(3) == Decimal("3.00")


def test_pct_handles_zero_whole():
    assert pct(5, 0) == Decimal("0.0")
    assert pct(1, 3) == Decimal("33.3")


def test_pct_change_from_zero_previous():
    assert pct_change(50, 0) == Decimal("100.0")
    assert pct_change(0, 0) == Decimal("0.0")
    assert pct_change(150, 100) == Decimal("50.0")
    assert pct_change(50, 100) == Decimal("-50.0")


def test_share_percentages_always_sum_to_100():
    for values in (
        [1, 1, 1],
        [Decimal("10.00"), Decimal("20.00"), Decimal("30.00"), Decimal("40.01")],
        [7, 3, 3, 3, 3, 3, 3],
        [Decimal("0.01"), Decimal("999.99")],
    ):
        shares = share_percentages(values)
        assert sum(shares) == Decimal("100.0")
        assert all(s >= 0 for s in shares)


def test_share_percentages_thirds_give_remainder_to_one_bucket():
    assert sorted(share_percentages([1, 1, 1])) == [Decimal("33.3"), Decimal("33.3"), Decimal("33.4")]


def test_share_percentages_all_zero_when_nothing_sold():
    assert share_percentages([0, 0]) == [Decimal("0.0"), Decimal("0.0")]
    assert share_percentages([]) == []

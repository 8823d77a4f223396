# tests/test_calculator.py
import pytest

from mortgage_recast.calculator import (
    InvalidParameters,
    LoanParams,
    ScheduleState,
    annuity_payment,
    build_schedule,
    compare_with_baseline,
    interest_by_year,
    monthly_rate,
    step,
)
from tests.conftest import make_params


def test_annuity_payment_reference():
    # 100k @ 6% over 360 months ≈ 599.55
    assert annuity_payment(100_000, monthly_rate(6), 360) == pytest.approx(599.55, abs=0.01)


def test_annuity_payment_zero_rate_and_zero_months():
    assert annuity_payment(12_000, 0.0, 12) == 1000.0
    assert annuity_payment(12_000, 0.005, 0) == 0.0


def test_no_extras_baseline_matches_closed_form():
    result = build_schedule(make_params())
    expected = annuity_payment(100_000, 0.005, 360)

    assert len(result.rows) == 360
    assert result.payoff_month == 360
    for row in result.rows:
        assert row.payment == pytest.approx(expected, rel=1e-9)
    assert result.rows[-1].balance == pytest.approx(0.0, abs=1e-6)
    assert len(result.segments) == 1
    assert not any(row.recast for row in result.rows)


def test_reference_scenario_month_one():
    result = build_schedule(make_params(extras={1: 1000.0}))
    first = result.rows[0]

    assert first.idx == 1
    assert first.payment == pytest.approx(599.55, abs=0.01)
    assert first.interest == pytest.approx(500.00, abs=1e-9)
    assert first.principal == pytest.approx(99.55, abs=0.01)
    assert first.extra == 1000.0
    assert first.balance == pytest.approx(98_900.45, abs=0.01)
    assert result.payoff_month < 360


def test_extra_without_recast_keeps_payment_and_shortens_payoff():
    result = build_schedule(make_params(extras={1: 1000.0}))
    baseline = build_schedule(make_params())

    assert result.rows[1].payment == result.rows[0].payment
    assert result.payoff_month < baseline.payoff_month
    assert result.total_interest < baseline.total_interest
    assert len(result.segments) == 1


def test_auto_recast_lowers_payment_from_month_two():
    plain = build_schedule(make_params(extras={1: 1000.0}))
    recast = build_schedule(make_params(extras={1: 1000.0}, auto_recast_on_extra=True))

    assert recast.rows[0].recast is True
    expected = annuity_payment(recast.rows[0].balance, 0.005, 359)
    assert recast.rows[0].new_payment == pytest.approx(expected)
    for row in recast.rows[1:-1]:
        assert row.payment == pytest.approx(expected)
        assert row.payment < plain.rows[0].payment
    assert recast.total_interest != pytest.approx(plain.total_interest)
    assert recast.payoff_month == 360


def test_recast_month_without_extra_keeps_same_payment():
    result = build_schedule(make_params(recast_months=frozenset({12})))

    assert result.rows[11].recast is True
    assert [s.start for s in result.segments] == [1, 13]
    assert result.segments[1].payment == pytest.approx(result.segments[0].payment, rel=1e-9)


def test_segments_follow_each_recast():
    result = build_schedule(make_params(extras={1: 1000.0, 13: 1000.0}, auto_recast_on_extra=True))

    assert [s.start for s in result.segments] == [1, 2, 14]
    assert result.segments[2].payment < result.segments[1].payment < result.segments[0].payment


def test_zero_rate_is_straight_line():
    result = build_schedule(LoanParams(principal=12_000, annual_rate_pct=0, term_months=12))

    assert result.payoff_month == 12
    assert result.total_interest == 0.0
    for row in result.rows:
        assert row.interest == 0.0
        assert row.principal == pytest.approx(1000.0)
    assert result.rows[-1].balance == 0.0
    assert result.balances()[:3] == [11_000.0, 10_000.0, 9_000.0]


def test_full_payoff_extra_in_month_one():
    result = build_schedule(
        LoanParams(principal=10_000, annual_rate_pct=0, term_months=10, extras={1: 10_000.0, 5: 500.0})
    )

    assert result.payoff_month == 1
    assert len(result.rows) == 1
    row = result.rows[0]
    assert row.principal == 1000.0
    assert row.extra == 9000.0
    assert row.balance == 0.0
    assert result.total_paid == pytest.approx(10_000.0)


def test_extra_that_zeroes_balance_emits_no_phantom_row():
    result = build_schedule(LoanParams(principal=3000, annual_rate_pct=0, term_months=3, extras={2: 2000.0}))

    assert result.payoff_month == 2
    assert len(result.rows) == 2
    assert result.rows[-1].extra == 1000.0
    assert result.rows[-1].balance == 0.0


def test_extra_in_final_month_is_clamped_to_nothing():
    result = build_schedule(LoanParams(principal=3000, annual_rate_pct=0, term_months=3, extras={3: 500.0}))

    assert result.payoff_month == 3
    assert result.rows[-1].extra == 0.0
    assert result.rows[-1].balance == 0.0


def test_final_month_payment_is_capped_to_payoff():
    result = build_schedule(LoanParams(principal=1000, annual_rate_pct=12, term_months=12, extras={1: 900.0}))
    last = result.rows[-1]

    assert last.balance == 0.0
    assert last.payment == pytest.approx(last.interest + last.principal)
    assert last.payment < result.rows[0].payment


def test_conservation_and_monotonic_balance():
    params = make_params(
        extras={1: 1000.0, 6: 250.0, 24: 5000.0, 60: 20_000.0},
        recast_months=frozenset({36, 120}),
        auto_recast_on_extra=True,
    )
    result = build_schedule(params)

    previous = params.principal
    for row in result.rows:
        assert row.total == pytest.approx(row.interest + row.principal + row.extra, abs=1e-6)
        assert row.balance <= previous
        assert row.balance >= 0.0
        previous = row.balance
    assert len(result.rows) <= params.term_months
    assert result.payoff_month <= params.term_months
    assert result.total_interest == pytest.approx(sum(r.interest for r in result.rows))
    assert result.total_paid == pytest.approx(sum(r.total for r in result.rows))


def test_rows_are_labelled_with_dates():
    result = build_schedule(LoanParams(principal=1200, annual_rate_pct=0, term_months=3, start_ym="2024-11"))

    assert [row.date for row in result.rows] == ["2024-11", "2024-12", "2025-01"]


def test_rows_without_start_have_no_date():
    result = build_schedule(LoanParams(principal=1200, annual_rate_pct=0, term_months=3))

    assert all(row.date is None for row in result.rows)


def test_build_is_deterministic():
    params = make_params(extras={3: 777.77}, recast_months=frozenset({10}))

    assert build_schedule(params) == build_schedule(params)


@pytest.mark.parametrize(
    "overrides",
    [
        {"principal": 0},
        {"principal": -1},
        {"term_months": 0},
        {"term_months": 12.5},
        {"annual_rate_pct": -0.1},
        {"annual_rate_pct": float("nan")},
        {"extras": {3: -5.0}},
        {"forgiveness": {3: -1.0}},
        {"start_ym": "2024-13"},
        {"start_ym": "202401"},
    ],
)
def test_invalid_parameters(overrides):
    with pytest.raises(InvalidParameters):
        build_schedule(make_params(**overrides))


def test_invalid_parameters_is_a_value_error():
    assert issubclass(InvalidParameters, ValueError)


def test_step_applies_interest_principal_and_extra():
    params = LoanParams(principal=1000, annual_rate_pct=12, term_months=10, extras={1: 50.0})
    state = ScheduleState(balance=1000.0, payment=100.0, remaining_term=10)

    row, nxt = step(state, 1, params, 0.01)

    assert row.interest == pytest.approx(10.0)
    assert row.principal == pytest.approx(90.0)
    assert row.extra == 50.0
    assert row.balance == pytest.approx(860.0)
    assert nxt == ScheduleState(balance=row.balance, payment=100.0, remaining_term=9)


def test_step_recast_in_last_month_is_noop():
    params = LoanParams(principal=1000, annual_rate_pct=12, term_months=5, recast_months=frozenset({5}))
    state = ScheduleState(balance=500.0, payment=100.0, remaining_term=1)

    row, nxt = step(state, 5, params, 0.01)

    assert row.recast is False
    assert row.new_payment is None
    assert nxt.payment == 100.0
    assert nxt.remaining_term == 0
    # residual stays on the row, no extra payment is invented
    assert row.balance == pytest.approx(405.0)


def test_step_floors_floating_dust_to_zero():
    params = LoanParams(principal=1000, annual_rate_pct=0, term_months=2)
    state = ScheduleState(balance=100.0 + 5e-10, payment=100.0, remaining_term=2)

    row, nxt = step(state, 1, params, 0.0)

    assert row.balance == 0.0
    assert nxt.balance == 0.0


def test_compare_with_baseline():
    comparison = compare_with_baseline(make_params(extras={1: 1000.0}))

    assert comparison.baseline.payoff_month == 360
    assert comparison.months_saved == 360 - comparison.result.payoff_month
    assert comparison.months_saved > 0
    assert comparison.interest_saved == pytest.approx(
        comparison.baseline.total_interest - comparison.result.total_interest
    )
    assert comparison.interest_saved > 0


def test_interest_by_year_groups_twelve_months():
    result = build_schedule(make_params(term_months=24))
    totals = interest_by_year(result.rows)

    assert sorted(totals) == [1, 2]
    assert totals[1] == pytest.approx(sum(r.interest for r in result.rows[:12]))
    assert totals[1] > totals[2]


def test_forgiveness_lowers_balance_without_counting_as_paid():
    result = build_schedule(LoanParams(principal=12_000, annual_rate_pct=0, term_months=12, forgiveness={1: 2000.0}))
    first = result.rows[0]

    assert first.principal == 1000.0
    assert first.extra == 0.0
    assert first.forgiven == 2000.0
    assert first.total == 1000.0
    assert first.balance == 9000.0
    assert first.recast is False
    assert result.total_forgiveness == 2000.0
    assert result.payoff_month == 10
    assert result.total_paid == pytest.approx(10_000.0)


def test_forgiveness_is_capped_at_remaining_balance():
    result = build_schedule(
        LoanParams(principal=12_000, annual_rate_pct=0, term_months=12, extras={1: 500.0}, forgiveness={1: 50_000.0})
    )

    assert result.payoff_month == 1
    row = result.rows[0]
    assert row.extra == 500.0
    assert row.forgiven == 10_500.0
    assert row.balance == 0.0
    assert result.total_forgiveness == 10_500.0
    assert result.total_paid == 1500.0


def test_forgiveness_triggers_auto_recast():
    result = build_schedule(
        LoanParams(
            principal=12_000,
            annual_rate_pct=0,
            term_months=12,
            forgiveness={1: 2000.0},
            auto_recast_on_extra=True,
        )
    )

    assert result.rows[0].recast is True
    assert result.rows[0].new_payment == pytest.approx(9000.0 / 11)
    assert result.payoff_month == 12
    assert [s.start for s in result.segments] == [1, 2]


def test_principal_is_conserved_with_extras_and_forgiveness():
    params = make_params(extras={2: 3000.0}, forgiveness={5: 7000.0, 100: 1000.0}, recast_months=frozenset({50}))
    result = build_schedule(params)

    repaid = sum(r.principal + r.extra + r.forgiven for r in result.rows)
    assert repaid == pytest.approx(params.principal - result.rows[-1].balance)
    assert result.total_forgiveness == pytest.approx(8000.0)


def test_baseline_ignores_forgiveness():
    comparison = compare_with_baseline(make_params(forgiveness={12: 10_000.0}))

    assert comparison.baseline.total_forgiveness == 0.0
    assert comparison.result.total_forgiveness == 10_000.0
    assert comparison.interest_saved > 0
    assert comparison.months_saved > 0


def test_cumulative_series():
    result = build_schedule(
        LoanParams(principal=12_000, annual_rate_pct=0, term_months=12, extras={1: 500.0}, forgiveness={2: 300.0})
    )

    assert result.cumulative_principal()[:3] == [1500.0, 2500.0, 3500.0]
    assert result.cumulative_forgiveness()[:3] == [0.0, 300.0, 300.0]
    assert result.cumulative_interest() == [0.0] * len(result.rows)


def test_cumulative_interest_ends_at_total_interest():
    result = build_schedule(make_params(extras={1: 1000.0}))
    series = result.cumulative_interest()

    assert len(series) == len(result.rows)
    assert series[0] == pytest.approx(500.0)
    assert series[-1] == pytest.approx(result.total_interest)
    assert all(b >= a for a, b in zip(series, series[1:]))

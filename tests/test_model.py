import logging
from copy import deepcopy
from dataclasses import fields

import pandas as pd
import pytest

from defaults import default_parameters, set_year_override, update_parameters
from model import (
    calculate_flagship_breakeven,
    calculate_irr,
    calculate_npv,
    calculate_payback_period,
    calculate_per_student,
    calculate_projection,
    calculate_year_data,
    compare_scenarios,
    get_financial_summary,
    perform_sensitivity_analysis,
    projection_to_frame,
    scenario_comparison_table,
)


@pytest.fixture
def params():
    return default_parameters()


@pytest.fixture(scope="module")
def base_summary():
    return get_financial_summary(default_parameters())


def test_year_calculation_is_deterministic(params):
    assert calculate_year_data(params, 5) == calculate_year_data(params, 5)


def test_projection_values_are_non_negative(base_summary):
    for r in base_summary.projection:
        assert r.students.flagship >= 0 and r.students.franchise >= 0 and r.students.adoption >= 0
        assert r.franchise_count >= 0
        for v in vars(r.revenue).values():
            assert v >= 0
        for name, v in vars(r.costs).items():
            assert v >= 0, name


def test_student_counts_are_integers(base_summary):
    for r in base_summary.projection:
        assert isinstance(r.students.total, int)
        assert r.students.total == r.students.flagship + r.students.franchise + r.students.adoption


def test_override_touches_only_its_year(params):
    before = deepcopy(params)
    overridden = set_year_override(params, 4, flagship_students=500)
    assert params == before
    assert calculate_year_data(overridden, 4).students.flagship == 500
    for year in (3, 5):
        assert calculate_year_data(overridden, year) == calculate_year_data(params, year)


def test_override_with_string_year_key(params):
    p = update_parameters(params, {"yearly_overrides": {"4": {"flagship_students": 500}}})
    assert calculate_year_data(p, 4).students.flagship == 500


def test_malformed_override_falls_back_to_formula(params):
    p = update_parameters(params, {"yearly_overrides": {4: {"flagship_students": "lots", "tuition": None}}})
    assert calculate_year_data(p, 4) == calculate_year_data(params, 4)


def test_capex_and_pricing_overrides(params):
    p = set_year_override(params, 3, capex=123.0, tuition=1000.0)
    r = calculate_year_data(p, 3)
    assert r.capex == 123.0
    assert r.pricing.tuition == 1000.0
    assert r.revenue.flagship == pytest.approx(r.students.flagship * 1000.0 * 12)


def test_zero_revenue_margin_is_zero(params):
    r = calculate_year_data(params, 0)
    assert r.revenue.total == 0
    assert r.ebitda_margin == 0.0


def test_payback_floor_and_never():
    assert calculate_payback_period([-100, 200]) == 2
    assert calculate_payback_period([-100, 50, 60, 10]) == 2
    assert calculate_payback_period([-100, 10, 10, 10, 100]) == 4
    assert calculate_payback_period([-100, -50, -10]) == 3


def test_irr_converges_within_tolerance():
    flows = [-1_000_000, 300_000, 400_000, 500_000, 200_000]
    irr = calculate_irr(flows)
    assert -0.99 <= irr <= 1.0
    assert abs(calculate_npv(flows, irr)) < 1000


def test_irr_stops_at_iteration_budget(caplog):
    with caplog.at_level(logging.WARNING, logger="model"):
        irr = calculate_irr([1_000_000, 1_000_000])
    assert irr == pytest.approx(1.0, abs=1e-6)
    assert "did not converge" in caplog.text


def test_npv_discounting():
    assert calculate_npv([100.0, 110.0], 0.10) == pytest.approx(200.0)
    assert calculate_npv([], 0.10) == 0.0


def test_franchise_cohort_aging():
    p = update_parameters(default_parameters(), {
        "franchise_growth_rate": 3, "franchise_count": 9,
        "students_per_franchise": 1200, "churn_rate": 0.05})
    r = calculate_year_data(p, 6)
    assert r.franchise_count == 9
    assert r.students.franchise == round(0.95 * 3 * (1200 + 903 + 597))


def test_franchise_fees_follow_new_units(params):
    assert calculate_year_data(params, 3).revenue.franchise_fees == 3 * 180000.0
    p = update_parameters(params, {"franchise_count": 4})
    assert calculate_year_data(p, 4).revenue.franchise_fees == 1 * 180000.0
    assert calculate_year_data(p, 5).revenue.franchise_fees == 0.0


def test_adoption_ramp(params):
    assert calculate_year_data(params, 1).students.adoption == 0
    assert calculate_year_data(params, 2).students.adoption == 2500
    assert calculate_year_data(params, 10).students.adoption == 142500


def test_flagship_ramp(params):
    assert [calculate_year_data(params, y).students.flagship for y in range(5)] == [0, 300, 750, 1200, 1200]


def test_architect_stream(params):
    assert params["capex_scenario"] == "private-historic"
    costs = [calculate_year_data(params, y).costs.architect_payments for y in range(4)]
    assert costs == pytest.approx([604163.0, 549996.0, 45833.0, 0.0])
    assert calculate_year_data(params, 1).capex == pytest.approx(5_549_996.0)
    assert calculate_year_data(params, 2).capex == pytest.approx(45833.0)


def test_no_architect_stream_without_flag(params):
    p = update_parameters(params, {"capex_scenario": "government"})
    for y in range(4):
        assert calculate_year_data(p, y).costs.architect_payments == 0
    r = calculate_year_data(p, 1)
    assert r.capex == pytest.approx(r.revenue.total * 0.005)
    assert calculate_year_data(p, 0).capex == 10_000_000.0


def test_late_maintenance_capex(params):
    r = calculate_year_data(params, 7)
    assert r.capex == pytest.approx(r.revenue.total * 0.003)


def test_year_one_is_flagship_tuition_only(params):
    r = calculate_year_data(params, 1)
    assert r.revenue.total == pytest.approx(300 * 2300 * 12)
    assert r.revenue.kits == 0


def test_tax_and_cash_flow_identities(base_summary):
    for r in base_summary.projection:
        assert r.taxes == pytest.approx(max(0.0, r.ebitda) * 0.34)
        assert r.net_income == pytest.approx(r.ebitda - r.taxes)
        assert r.free_cash_flow == pytest.approx(r.net_income - r.capex)
        assert r.ebitda == pytest.approx(r.revenue.total - r.costs.total)


def test_summary_metrics(base_summary):
    s = base_summary.summary
    proj = base_summary.projection
    assert len(proj) == 11
    assert s.cash_flows[0] == -10_000_000.0
    assert s.cash_flows[1:] == [r.free_cash_flow for r in proj[1:]]
    assert s.cumulative_ebitda == pytest.approx(sum(r.ebitda for r in proj[1:]))
    assert s.cumulative_fcf == pytest.approx(sum(r.free_cash_flow for r in proj[1:]))
    assert s.year10_revenue == proj[10].revenue.total
    assert s.year10_students == proj[10].students.total
    assert s.payback_period >= 2
    assert -0.99 <= s.irr <= 1.0


def test_boundary_validation(params):
    with pytest.raises(ValueError):
        calculate_year_data(params, -1)
    with pytest.raises(ValueError):
        calculate_projection(params, -1)
    with pytest.raises(ValueError):
        calculate_year_data(update_parameters(params, {"capex_scenario": "castle"}), 1)
    with pytest.raises(ValueError):
        get_financial_summary(update_parameters(params, {"churn_rate": 1.5}))


def test_short_horizon(params):
    assert [r.year for r in calculate_projection(params, 0)] == [0]


def test_breakeven(params):
    be = calculate_flagship_breakeven(params)
    df = be.monthly
    assert len(df) == 24
    assert df["students"].iloc[0] == 50
    assert df["students"].max() == 1200
    positive = df.loc[df["cumulative_result"] > 0, "month"]
    expected = int(positive.iloc[0]) if len(positive) else 24
    assert be.break_even_month == expected


def test_sensitivity_leaves_params_alone(params, base_summary):
    before = deepcopy(params)
    df = perform_sensitivity_analysis(params, "flagship_tuition")
    assert params == before
    assert list(df["variation"]) == pytest.approx([-20, -10, 0, 10, 20])
    assert df.loc[df["variation"] == 0, "npv"].iloc[0] == pytest.approx(base_summary.summary.npv)
    assert df["year10_revenue"].is_monotonic_increasing


def test_sensitivity_rejects_unknown_parameter(params):
    with pytest.raises(ValueError):
        perform_sensitivity_analysis(params, "capex_scenario")


def test_compare_scenarios(params):
    df = compare_scenarios(params)
    assert list(df["scenario"]) == ["government", "built-to-suit", "direct", "private-historic"]
    assert df.set_index("scenario").loc["built-to-suit", "initial_capex"] == 3_000_000.0


def test_scenario_comparison_table(params):
    df = scenario_comparison_table(params)
    assert list(df["scenario"]) == ["Pessimistic", "Realistic", "Optimistic"]
    assert df["y10_revenue"].iloc[0] < df["y10_revenue"].iloc[2]


def test_per_student_handles_empty_years(base_summary):
    df = calculate_per_student(base_summary.projection)
    assert df.loc[0, "revenue_per_student"] == 0.0
    assert not df.isna().any().any()


def test_projection_frame(base_summary):
    df = projection_to_frame(base_summary.projection)
    assert isinstance(df, pd.DataFrame)
    assert len(df) == 11
    assert "costs_architect_payments" in df.columns
    assert "pricing_total" not in df.columns


def test_financial_summary_is_deterministic(params):
    assert get_financial_summary(params) == get_financial_summary(params)


def test_escalation_boundary(params):
    for year in (0, 1):
        pr = calculate_year_data(params, year).pricing
        assert (pr.tuition, pr.adoption_fee, pr.kit_cost) == (2300.0, 180.0, 1200.0)
    pr = calculate_year_data(params, 2).pricing
    assert pr.tuition == pytest.approx(2300.0 * 1.06)
    assert pr.adoption_fee == pytest.approx(180.0 * 1.06)
    assert pr.kit_cost == pytest.approx(1200.0 * 1.06)


def test_totals_equal_named_streams(base_summary):
    for r in base_summary.projection:
        assert r.revenue.total == pytest.approx(sum(getattr(r.revenue, f.name) for f in fields(r.revenue)))
        assert r.costs.total == pytest.approx(sum(getattr(r.costs, f.name) for f in fields(r.costs)))
        assert len(fields(r.costs)) == 22


def test_franchise_closures_drop_their_students(params):
    p = set_year_override(params, 4, franchise_count=0)
    assert calculate_year_data(p, 3).students.franchise == 855
    closed = calculate_year_data(p, 4)
    assert closed.franchise_count == 0
    assert closed.students.franchise == 0
    reopened = calculate_year_data(p, 5)
    assert reopened.franchise_count == 9
    assert reopened.students.franchise == round(9 * 300 * 0.95)
    assert reopened.revenue.franchise_fees == 9 * 180000.0


def test_partial_franchise_closure_trims_newest_cohort(params):
    p = set_year_override(params, 5, franchise_count=4)
    r = calculate_year_data(p, 5)
    assert r.students.franchise == round(0.95 * (3 * 903 + 1 * 597))


def test_irr_flagged_when_outside_bracket(base_summary):
    s = base_summary.summary
    assert s.irr_converged is False
    assert s.irr == pytest.approx(1.0, abs=1e-6)


def test_long_horizon(params):
    projection = calculate_projection(params, 30)
    assert [r.year for r in projection] == list(range(31))
    assert projection[-1].franchise_count == 24

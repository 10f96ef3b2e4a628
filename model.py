"""
Flagship School Plan - Ten-Year Projection Engine
Flagship campus + franchise network + adoption licensing. Every year is
computed from scratch out of the parameter dict; summary metrics (IRR, NPV,
payback, flagship break-even) are derived from the resulting series.
"""
import logging
import math
from dataclasses import dataclass, field, fields
from typing import Dict, List

import numpy as np
import pandas as pd

from defaults import (
    ADOPTION_PILOT_STUDENTS, ADOPTION_RAMP_YEARS, ARCHITECT_MONTHLY, ARCHITECT_MONTHS_Y0,
    ARCHITECT_MONTHS_Y2, ARCHITECT_UPFRONT, BREAKEVEN, CAPEX_SCENARIOS, COST_INFLATION,
    COST_RATES, DEFAULT_PARAMETERS, FLAGSHIP_RAMP, FRANCHISE_RAMP_STEPS,
    FRANCHISE_START_YEAR, FRANCHISE_STARTING_STUDENTS, HORIZON_YEARS, IRR_MAX_ITER,
    IRR_TOLERANCE, MAINTENANCE_CAPEX, PAYBACK_FLOOR, SCENARIO_PRESETS, TAX_RATE,
    _is_number, apply_scenario_preset, check_parameters, get_capex_scenario,
    update_parameters,
)

logger = logging.getLogger(__name__)

# ── Records ─────────────────────────────────────────────────

@dataclass(frozen=True)
class StudentCounts:
    flagship: int
    franchise: int
    adoption: int

    @property
    def total(self) -> int:
        return self.flagship + self.franchise + self.adoption


@dataclass(frozen=True)
class Pricing:
    tuition: float
    adoption_fee: float
    kit_cost: float


@dataclass(frozen=True)
class RevenueStreams:
    flagship: float
    franchise_royalty: float
    franchise_marketing: float
    franchise_fees: float
    adoption: float
    kits: float

    @property
    def total(self) -> float:
        return (self.flagship + self.franchise_royalty + self.franchise_marketing
                + self.franchise_fees + self.adoption + self.kits)


@dataclass(frozen=True)
class CostBreakdown:
    technology_opex: float
    marketing: float
    staff_corporate: float
    staff_flagship: float
    staff_franchise_support: float
    staff_adoption_support: float
    facilities: float
    legal: float
    insurance: float
    travel: float
    working_capital: float
    contingency: float
    teacher_training: float
    quality_assurance: float
    regulatory_compliance: float
    data_management: float
    parent_engagement: float
    bad_debt: float
    payment_processing: float
    platform_rd: float
    content_development: float
    architect_payments: float

    @property
    def total(self) -> float:
        return (self.technology_opex + self.marketing
                + self.staff_corporate + self.staff_flagship
                + self.staff_franchise_support + self.staff_adoption_support
                + self.facilities + self.legal + self.insurance + self.travel
                + self.working_capital + self.contingency + self.teacher_training
                + self.quality_assurance + self.regulatory_compliance
                + self.data_management + self.parent_engagement + self.bad_debt
                + self.payment_processing + self.platform_rd
                + self.content_development + self.architect_payments)


@dataclass(frozen=True)
class YearRecord:
    year: int
    students: StudentCounts
    franchise_count: float
    pricing: Pricing
    revenue: RevenueStreams
    costs: CostBreakdown
    ebitda: float
    ebitda_margin: float
    capex: float
    taxes: float
    net_income: float
    free_cash_flow: float

    def as_row(self) -> Dict:
        row = {"year": self.year}
        for prefix, part in (("students", self.students), ("pricing", self.pricing),
                             ("revenue", self.revenue), ("costs", self.costs)):
            for f in fields(part):
                row[f"{prefix}_{f.name}"] = getattr(part, f.name)
            if prefix != "pricing":
                row[f"{prefix}_total"] = part.total
        row.update({"franchise_count": self.franchise_count, "ebitda": self.ebitda,
                    "ebitda_margin": self.ebitda_margin, "capex": self.capex,
                    "taxes": self.taxes, "net_income": self.net_income,
                    "free_cash_flow": self.free_cash_flow})
        return row


@dataclass(frozen=True, eq=False)
class BreakevenResult:
    break_even_month: int
    monthly: pd.DataFrame

    def __eq__(self, other):
        if not isinstance(other, BreakevenResult):
            return NotImplemented
        return self.break_even_month == other.break_even_month and self.monthly.equals(other.monthly)


@dataclass(frozen=True)
class SummaryMetrics:
    irr: float
    irr_converged: bool
    npv: float
    payback_period: int
    cumulative_ebitda: float
    cumulative_fcf: float
    year10_revenue: float
    year10_ebitda: float
    year10_students: int
    flagship_breakeven_month: int
    capex_scenario: Dict
    cash_flows: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class FinancialSummary:
    projection: List[YearRecord]
    summary: SummaryMetrics
    flagship_breakeven: BreakevenResult

# ── Helpers ─────────────────────────────────────────────────

def _safe_div(num, den):
    return num / den if den else 0.0


def _round_count(x):
    # half-up, never negative
    return max(0, int(math.floor(x + 0.5)))


def _params(params):
    p = dict(DEFAULT_PARAMETERS)
    if params:
        p.update(params)
    return p


def _year_overrides(p, year):
    ov = p.get("yearly_overrides")
    if not isinstance(ov, dict):
        return {}
    year_ov = ov.get(year, ov.get(str(year)))
    return year_ov if isinstance(year_ov, dict) else {}


def _override(p, year, key):
    v = _year_overrides(p, year).get(key)
    if v is None:
        return None
    if not _is_number(v):
        logger.debug("Ignoring malformed override %s=%r for year %s", key, v, year)
        return None
    return float(v)


def _check_year(year):
    if isinstance(year, bool) or not isinstance(year, int) or year < 0:
        raise ValueError(f"year must be a non-negative integer, got {year!r}")


def _inflation(year, rate=COST_INFLATION):
    return (1 + rate) ** max(0, year - 1)

# ── Students ────────────────────────────────────────────────

def _flagship_students(p, year):
    ov = _override(p, year, "flagship_students")
    if ov is not None:
        return _round_count(ov)
    if year in FLAGSHIP_RAMP:
        return FLAGSHIP_RAMP[year]
    target = p["flagship_students"]; churn = p["churn_rate"]
    nominal = target  # prior year measured against its nominal target, not its churned count
    return _round_count(nominal * (1 - churn) + target * churn)


def _franchise_count(p, year):
    ov = _override(p, year, "franchise_count")
    if ov is not None:
        return max(ov, 0.0)
    if year < FRANCHISE_START_YEAR:
        return 0.0
    return float(min((year - FRANCHISE_START_YEAR + 1) * p["franchise_growth_rate"], p["franchise_count"]))


def _students_per_franchise(p, year):
    ov = _override(p, year, "students_per_franchise")
    return ov if ov is not None else p["students_per_franchise"]


def _cohort_students(age, target):
    start = FRANCHISE_STARTING_STUDENTS
    if age <= 0:
        return start
    if age in FRANCHISE_RAMP_STEPS:
        return start + (target - start) * FRANCHISE_RAMP_STEPS[age]
    return target


def _franchise_students(p, year):
    ov = _override(p, year, "franchise_students")
    if ov is not None:
        return _round_count(ov)
    # open cohorts as (start_year, units); a lower count closes the newest first
    cohorts = []
    for y in range(year + 1):
        count = _franchise_count(p, y)
        open_units = sum(units for _, units in cohorts)
        if count > open_units:
            cohorts.append((y, count - open_units))
        while cohorts and open_units > count:
            start, units = cohorts.pop()
            excess = open_units - count
            if units > excess:
                cohorts.append((start, units - excess))
            open_units -= min(units, excess)
    target = _students_per_franchise(p, year)
    retention = 1 - p["churn_rate"]
    total = sum(units * _cohort_students(year - start, target) * retention
                for start, units in cohorts)
    return _round_count(total)


def _adoption_students(p, year):
    ov = _override(p, year, "adoption_students")
    if ov is not None:
        return _round_count(ov)
    if year <= 1:
        return 0
    pilot = ADOPTION_PILOT_STUDENTS
    if year == 2:
        return pilot
    target = p["adoption_students"]
    ramp = min(year - 2, ADOPTION_RAMP_YEARS) / ADOPTION_RAMP_YEARS
    students = min(pilot + (target - pilot) * ramp, target)
    return _round_count(students * (1 - p["churn_rate"]))

# ── Pricing ─────────────────────────────────────────────────

def _pricing(p, year):
    esc = (1 + p["tuition_increase_rate"]) ** max(0, year - 1)
    values = {}
    for key, base in (("tuition", p["flagship_tuition"]),
                      ("adoption_fee", p["adoption_license_fee"]),
                      ("kit_cost", p["kit_cost_per_student"])):
        ov = _override(p, year, key)
        values[key] = ov if ov is not None else base * esc
    return Pricing(**values)

# ── Revenue / Costs / CAPEX ─────────────────────────────────

def _revenue(p, year, students, pricing, new_franchises):
    franchise_base = students.franchise * pricing.tuition * 12
    kits = students.total * pricing.kit_cost if year >= p["kit_sales_start_year"] else 0.0
    return RevenueStreams(
        flagship=students.flagship * pricing.tuition * 12,
        franchise_royalty=franchise_base * p["franchise_royalty_rate"],
        franchise_marketing=franchise_base * p["marketing_fee_rate"],
        franchise_fees=new_franchises * p["franchise_fee"],
        adoption=students.adoption * pricing.adoption_fee * 12,
        kits=kits,
    )


def _architect_payment(scenario, year):
    if not scenario["architect_fees"]:
        return 0.0
    if year == 0:
        return ARCHITECT_UPFRONT + ARCHITECT_MONTHLY * ARCHITECT_MONTHS_Y0
    if year == 1:
        return ARCHITECT_MONTHLY * 12
    if year == 2:
        return ARCHITECT_MONTHLY * ARCHITECT_MONTHS_Y2
    return 0.0


def _costs(p, year, students, franchise_count, revenue, scenario):
    c = COST_RATES; infl = _inflation(year); rev = revenue
    total = students.total
    adoption_schools = math.ceil(students.adoption / c["adoption_students_per_school"])
    adoption_support = math.ceil(adoption_schools / c["adoption_schools_per_support"])
    travel_locations = franchise_count + students.adoption // c["travel"]["adoption_students_per_location"]
    flagship_staff = 0.0
    if students.flagship > 0:
        flagship_staff = max(c["staff_flagship"]["floor"],
                             students.flagship * c["staff_flagship"]["per_student"]) * infl
    return CostBreakdown(
        technology_opex=rev * p["technology_opex_rate"],
        marketing=rev * p["marketing_rate"],
        staff_corporate=max(c["staff_corporate"]["floor"], total * c["staff_corporate"]["per_student"]) * infl,
        staff_flagship=flagship_staff,
        staff_franchise_support=franchise_count * c["staff_franchise_per_unit"] * infl,
        staff_adoption_support=adoption_support * c["adoption_support_monthly"] * 12 * infl,
        facilities=scenario["annual_facility_cost"] * _inflation(year, scenario["facility_inflation"]),
        legal=max(c["legal"]["floor"], rev * c["legal"]["rate"]),
        insurance=c["insurance_base"] * infl,
        travel=max(c["travel"]["floor"], travel_locations * c["travel"]["per_location"]),
        working_capital=rev * c["working_capital"],
        contingency=rev * c["contingency"],
        teacher_training=max(c["teacher_training"]["floor"],
                             (students.flagship + students.franchise) * c["teacher_training"]["per_student"]) * infl,
        quality_assurance=max(c["quality_assurance"]["floor"], rev * c["quality_assurance"]["rate"]),
        regulatory_compliance=max(c["regulatory_compliance"]["floor"], rev * c["regulatory_compliance"]["rate"]),
        data_management=max(c["data_management"]["floor"], total * c["data_management"]["per_student"]),
        parent_engagement=max(c["parent_engagement"]["floor"], total * c["parent_engagement"]["per_student"]),
        bad_debt=rev * c["bad_debt"],
        payment_processing=rev * c["payment_processing"],
        platform_rd=rev * c["platform_rd"],
        content_development=rev * c["content_development"],
        architect_payments=_architect_payment(scenario, year),
    )


def _capex(p, year, revenue_total, scenario):
    ov = _override(p, year, "capex")
    if ov is not None:
        return ov
    if year == 0:
        return scenario["initial_capex"]
    if year == 1:
        scheduled = scenario["year1_capex"] + _architect_payment(scenario, 1)
        if scheduled > 0:
            return scheduled
    if year == 2:
        tail = _architect_payment(scenario, 2)
        if tail > 0:
            return tail
    m = MAINTENANCE_CAPEX
    rate = m["early"] if year <= m["step_year"] else m["late"]
    return revenue_total * rate

# ── Year / Projection ───────────────────────────────────────

def calculate_year_data(params: Dict, year: int) -> YearRecord:
    """Build the record for one year (0 = pre-launch) from ``params`` alone.

    The franchise fee needs last year's franchise count, which is taken from
    a full recomputation of that year so its overrides apply. That makes a
    year-N call recurse N deep and cost roughly N**3 cohort steps; carrying
    the previous record forward in ``calculate_projection`` would make it
    linear.
    """
    _check_year(year)
    p = _params(params)
    scenario = get_capex_scenario(p["capex_scenario"])

    students = StudentCounts(flagship=_flagship_students(p, year),
                             franchise=_franchise_students(p, year),
                             adoption=_adoption_students(p, year))
    franchise_count = _franchise_count(p, year)
    prior_count = calculate_year_data(params, year - 1).franchise_count if year > 0 else 0.0
    new_franchises = max(0.0, franchise_count - prior_count)

    pricing = _pricing(p, year)
    revenue = _revenue(p, year, students, pricing, new_franchises)
    costs = _costs(p, year, students, franchise_count, revenue.total, scenario)

    ebitda = revenue.total - costs.total
    capex = _capex(p, year, revenue.total, scenario)
    taxes = max(0.0, ebitda) * TAX_RATE
    net_income = ebitda - taxes
    return YearRecord(
        year=year, students=students, franchise_count=franchise_count,
        pricing=pricing, revenue=revenue, costs=costs,
        ebitda=ebitda, ebitda_margin=_safe_div(ebitda, revenue.total),
        capex=capex, taxes=taxes, net_income=net_income,
        free_cash_flow=net_income - capex,
    )


def calculate_projection(params: Dict, years: int = HORIZON_YEARS) -> List[YearRecord]:
    if isinstance(years, bool) or not isinstance(years, int) or years < 0:
        raise ValueError(f"years must be a non-negative integer, got {years!r}")
    check_parameters(_params(params))
    return [calculate_year_data(params, y) for y in range(years + 1)]

# ── NPV / IRR / Payback ─────────────────────────────────────

def calculate_npv(cash_flows, discount_rate: float = 0.10) -> float:
    cf = np.asarray(cash_flows, dtype=float)
    if cf.size == 0:
        return 0.0
    factors = np.power(1.0 + discount_rate, np.arange(cf.size))
    return float(np.sum(cf / factors))


def calculate_irr(cash_flows) -> float:
    """Bisection on NPV(rate) = 0 over [-0.99, 1.0], seeded at 0.10.

    Stops once |NPV| drops under an absolute tolerance of 1000 currency
    units or after 100 iterations, whichever comes first; the last rate
    tried is returned either way.
    """
    rate, low, high = 0.1, -0.99, 1.0
    for _ in range(IRR_MAX_ITER):
        npv = calculate_npv(cash_flows, rate)
        if abs(npv) < IRR_TOLERANCE:
            return rate
        if npv > 0:
            low = rate
        else:
            high = rate
        rate = (low + high) / 2
    logger.warning("IRR did not converge in %d iterations; returning %.6f", IRR_MAX_ITER, rate)
    return rate


def calculate_payback_period(cash_flows) -> int:
    cum = np.cumsum(np.asarray(cash_flows, dtype=float))
    positive = np.nonzero(cum > 0)[0]
    if len(positive) == 0:
        return len(cum)
    return max(int(positive[0]), PAYBACK_FLOOR)

# ── Flagship break-even (monthly) ───────────────────────────

def _breakeven_students(month):
    if month <= 6:
        return min(50 + (month - 1) * 25, 300)
    if month <= 12:
        return min(300 + (month - 6) * 45, 600)
    return min(600 + (month - 12) * 75, 1200)


def calculate_flagship_breakeven(params: Dict) -> BreakevenResult:
    """Standalone 24-month flagship ramp; deliberately not reconciled with
    the annual series (different ramp and cost formulas)."""
    p = _params(params); b = BREAKEVEN
    facility = get_capex_scenario(p["capex_scenario"])["annual_facility_cost"] / 12
    rows = []; cum = 0.0; be = None
    for m in range(1, b["months"] + 1):
        s = _breakeven_students(m)
        rev = s * p["flagship_tuition"]
        cost = (max(b["staff_floor"], s * b["staff_per_student"]) + facility
                + rev * b["marketing_rate"] + rev * b["operational_rate"] + b["corporate_monthly"])
        res = rev - cost; cum += res
        rows.append({"month": m, "students": s, "monthly_revenue": rev,
                     "monthly_operating_costs": cost, "monthly_result": res,
                     "cumulative_result": cum})
        if cum > 0 and be is None:
            be = m
    return BreakevenResult(break_even_month=be or b["months"], monthly=pd.DataFrame(rows))

# ── Summary ─────────────────────────────────────────────────

def get_financial_summary(params: Dict) -> FinancialSummary:
    p = _params(params)
    projection = calculate_projection(params, HORIZON_YEARS)
    scenario = get_capex_scenario(p["capex_scenario"])
    cash_flows = [r.free_cash_flow for r in projection]
    cash_flows[0] = -scenario["equity_investment"]

    operating = projection[1:]
    final = projection[-1]
    breakeven = calculate_flagship_breakeven(params)
    irr = calculate_irr(cash_flows)
    summary = SummaryMetrics(
        irr=irr,
        irr_converged=abs(calculate_npv(cash_flows, irr)) < IRR_TOLERANCE,
        npv=calculate_npv(cash_flows, p["discount_rate"]),
        payback_period=calculate_payback_period(cash_flows),
        cumulative_ebitda=sum(r.ebitda for r in operating),
        cumulative_fcf=sum(r.free_cash_flow for r in operating),
        year10_revenue=final.revenue.total,
        year10_ebitda=final.ebitda,
        year10_students=final.students.total,
        flagship_breakeven_month=breakeven.break_even_month,
        capex_scenario=dict(scenario),
        cash_flows=cash_flows,
    )
    return FinancialSummary(projection=projection, summary=summary, flagship_breakeven=breakeven)

# ── Sensitivity / Scenarios ─────────────────────────────────

def perform_sensitivity_analysis(params: Dict, parameter: str,
                                 variations=(-0.2, -0.1, 0.0, 0.1, 0.2)) -> pd.DataFrame:
    p = _params(params)
    base = p.get(parameter)
    if not _is_number(base):
        raise ValueError(f"Cannot vary {parameter!r}: not a numeric parameter")
    rows = []
    for v in variations:
        value = base * (1 + v)
        s = get_financial_summary(update_parameters(p, {parameter: value})).summary
        rows.append({"variation": v * 100, "value": value, "irr": s.irr, "npv": s.npv,
                     "year10_revenue": s.year10_revenue, "year10_ebitda": s.year10_ebitda})
    return pd.DataFrame(rows)


def compare_scenarios(params: Dict) -> pd.DataFrame:
    rows = []
    for key, sc in CAPEX_SCENARIOS.items():
        s = get_financial_summary(update_parameters(_params(params), {"capex_scenario": key})).summary
        rows.append({"scenario": key, "name": sc["name"], "irr": s.irr, "npv": s.npv,
                     "initial_capex": sc["initial_capex"], "year10_revenue": s.year10_revenue,
                     "payback_period": s.payback_period})
    return pd.DataFrame(rows)


def scenario_comparison_table(params: Dict = None, presets=None) -> pd.DataFrame:
    if presets is None:
        presets = list(SCENARIO_PRESETS)
    base = _params(params)
    rows = []
    for name in presets:
        res = get_financial_summary(apply_scenario_preset(name, base))
        pr = res.projection; s = res.summary
        rows.append({"scenario": SCENARIO_PRESETS[name]["label"],
                     "y1_revenue": pr[1].revenue.total, "y5_revenue": pr[5].revenue.total,
                     "y10_revenue": s.year10_revenue,
                     "y1_ebitda": pr[1].ebitda, "y5_ebitda": pr[5].ebitda,
                     "y10_ebitda": s.year10_ebitda,
                     "y10_margin": pr[-1].ebitda_margin,
                     "irr": s.irr, "npv": s.npv, "payback_period": s.payback_period,
                     "cumulative_fcf": s.cumulative_fcf})
    return pd.DataFrame(rows)

# ── Tabular views ───────────────────────────────────────────

def projection_to_frame(projection: List[YearRecord]) -> pd.DataFrame:
    return pd.DataFrame([r.as_row() for r in projection])


def calculate_per_student(projection: List[YearRecord]) -> pd.DataFrame:
    rows = []
    for r in projection:
        st = r.students
        rows.append({"year": r.year, "total_students": st.total,
                     "revenue_per_student": _safe_div(r.revenue.total, st.total),
                     "cost_per_student": _safe_div(r.costs.total, st.total),
                     "ebitda_per_student": _safe_div(r.ebitda, st.total),
                     "flagship_revenue_per_student": _safe_div(r.revenue.flagship, st.flagship),
                     "franchise_revenue_per_student": _safe_div(
                         r.revenue.franchise_royalty + r.revenue.franchise_marketing, st.franchise),
                     "adoption_revenue_per_student": _safe_div(r.revenue.adoption, st.adoption)})
    return pd.DataFrame(rows)

# -- Entry Point --

if __name__ == "__main__":
    from export import format_currency, format_percent

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    result = get_financial_summary(DEFAULT_PARAMETERS)
    df = projection_to_frame(result.projection)
    print(df[["year", "students_total", "revenue_total", "costs_total", "ebitda", "free_cash_flow"]].to_string(index=False))
    s = result.summary
    print(f"Scenario: {s.capex_scenario['name']}")
    irr = format_percent(s.irr) if s.irr_converged else f">= {format_percent(s.irr)}"
    print(f"IRR: {irr}  NPV: {format_currency(s.npv)}  Payback: year {s.payback_period}")
    print(f"Flagship break-even: month {s.flagship_breakeven_month}")
    print("Done.")

"""
Flagship School Plan - Projection Model Defaults
Base-case parameters, CAPEX profiles and scenario presets. Parameter sets
are plain dicts; every helper here returns a new dict and never edits the
one it was given.
"""
import logging
import math
from copy import deepcopy
from typing import Dict, List

logger = logging.getLogger(__name__)

# ── Fixed model constants ───────────────────────────────────

HORIZON_YEARS = 10
TAX_RATE = 0.34  # IRPJ + CSLL
COST_INFLATION = 0.05
IRR_TOLERANCE = 1000.0
IRR_MAX_ITER = 100
PAYBACK_FLOOR = 2

FLAGSHIP_RAMP = {0: 0, 1: 300, 2: 750}
FRANCHISE_START_YEAR = 3
FRANCHISE_STARTING_STUDENTS = 300
FRANCHISE_RAMP_STEPS = {1: 0.33, 2: 0.67}
ADOPTION_PILOT_STUDENTS = 2500
ADOPTION_RAMP_YEARS = 8

ARCHITECT_UPFRONT = 100000.0
ARCHITECT_MONTHLY = 45833.0
ARCHITECT_MONTHS_Y0 = 11
ARCHITECT_MONTHS_Y2 = 1

MAINTENANCE_CAPEX = {"early": 0.005, "late": 0.003, "step_year": 5}

COST_RATES = {
    "staff_corporate": {"floor": 3000000, "per_student": 80},
    "staff_flagship": {"floor": 5000000, "per_student": 4400},
    "staff_franchise_per_unit": 300000,
    "adoption_students_per_school": 500,
    "adoption_schools_per_support": 20,
    "adoption_support_monthly": 10000,
    "teacher_training": {"floor": 200000, "per_student": 250},
    "quality_assurance": {"floor": 45000, "rate": 0.0015},
    "regulatory_compliance": {"floor": 60000, "rate": 0.00075},
    "data_management": {"floor": 200000, "per_student": 40},
    "parent_engagement": {"floor": 150000, "per_student": 60},
    "legal": {"floor": 500000, "rate": 0.003},
    "insurance_base": 100000,
    "travel": {"floor": 300000, "per_location": 50000, "adoption_students_per_location": 5000},
    "content_development": 0.04,
    "bad_debt": 0.02,
    "payment_processing": 0.025,
    "platform_rd": 0.06,
    "working_capital": 0.01,
    "contingency": 0.005,
}

BREAKEVEN = {
    "months": 24,
    "staff_floor": 400000, "staff_per_student": 350,
    "marketing_rate": 0.15, "operational_rate": 0.08,
    "corporate_monthly": 250000,
}

# ── CAPEX Scenarios ─────────────────────────────────────────

CAPEX_SCENARIOS = {
    "government": {
        "name": "Government Partnership",
        "description": "R$10M renovation, 30-year free building use from government",
        "initial_capex": 10000000.0, "year1_capex": 0.0, "equity_investment": 10000000.0,
        "annual_facility_cost": 800000.0, "facility_inflation": 0.05, "architect_fees": False,
    },
    "built-to-suit": {
        "name": "Built-to-Suit with 30-Year Lease",
        "description": "R$3M tech, developer builds R$25M facility, 30-year lease ~R$3.2M/year",
        "initial_capex": 3000000.0, "year1_capex": 0.0, "equity_investment": 3000000.0,
        "annual_facility_cost": 3200000.0, "facility_inflation": 0.05, "architect_fees": False,
    },
    "direct": {
        "name": "Direct Investment & Construction",
        "description": "R$25M building construction + tech, full ownership",
        "initial_capex": 25000000.0, "year1_capex": 0.0, "equity_investment": 25000000.0,
        "annual_facility_cost": 1200000.0, "facility_inflation": 0.05, "architect_fees": False,
    },
    "private-historic": {
        "name": "Private Historic Building",
        "description": "R$20M restoration in 2026 + R$5M in 2027; R$10M bridge equity, "
                       "R$45M development loans and R$6.25M municipal grant outside the IRR base",
        "initial_capex": 20000000.0, "year1_capex": 5000000.0, "equity_investment": 10000000.0,
        "annual_facility_cost": 1500000.0, "facility_inflation": 0.05, "architect_fees": True,
    },
}

# ── Default Parameters ──────────────────────────────────────

DEFAULT_PARAMETERS = {
    # market and students
    "flagship_students": 1200,
    "franchise_count": 24,
    "students_per_franchise": 1200,
    "adoption_students": 150000,
    "churn_rate": 0.05,
    # pricing
    "flagship_tuition": 2300.0,
    "adoption_license_fee": 180.0,
    "franchise_royalty_rate": 0.06,
    "marketing_fee_rate": 0.02,
    "franchise_fee": 180000.0,
    "kit_cost_per_student": 1200.0,
    "kit_sales_start_year": 2,
    "tuition_increase_rate": 0.06,
    # cost rates
    "technology_opex_rate": 0.04,
    "marketing_rate": 0.05,
    # growth
    "franchise_growth_rate": 3,
    # capital
    "capex_scenario": "private-historic",
    "discount_rate": 0.10,
    # {year: {field: value}}
    "yearly_overrides": {},
}

OVERRIDE_FIELDS = (
    "flagship_students", "franchise_students", "adoption_students",
    "franchise_count", "students_per_franchise",
    "tuition", "adoption_fee", "kit_cost", "capex",
)

# ── Scenario Presets ────────────────────────────────────────

SCENARIO_PRESETS = {
    "pessimistic": {
        "label": "Pessimistic",
        "description": "Conservative growth with challenges",
        "parameters": {
            "flagship_students": 1080, "franchise_count": 20, "students_per_franchise": 1080,
            "adoption_students": 135000, "churn_rate": 0.08,
            "flagship_tuition": 2070.0, "adoption_license_fee": 162.0,
            "franchise_royalty_rate": 0.054, "franchise_fee": 162000.0,
            "kit_cost_per_student": 1080.0, "tuition_increase_rate": 0.054,
            "technology_opex_rate": 0.05, "marketing_rate": 0.06,
            "franchise_growth_rate": 2,
        },
    },
    "realistic": {
        "label": "Realistic",
        "description": "Expected scenario with moderate growth",
        "parameters": {},
    },
    "optimistic": {
        "label": "Optimistic",
        "description": "Strong growth with ambitious targets",
        "parameters": {
            "flagship_students": 1500, "franchise_count": 40, "students_per_franchise": 1500,
            "adoption_students": 250000, "churn_rate": 0.03,
            "flagship_tuition": 2500.0, "adoption_license_fee": 200.0,
            "franchise_royalty_rate": 0.07, "franchise_fee": 200000.0,
            "kit_cost_per_student": 1500.0, "tuition_increase_rate": 0.08,
            "technology_opex_rate": 0.035, "marketing_rate": 0.04,
            "franchise_growth_rate": 5,
        },
    },
}

# ── Parameter updates ───────────────────────────────────────

def default_parameters():
    return deepcopy(DEFAULT_PARAMETERS)


def update_parameters(params: Dict, patch: Dict) -> Dict:
    """Return ``{**params, **patch}`` as a fresh deep copy."""
    merged = deepcopy(params)
    merged.update(deepcopy(patch))
    return merged


def set_year_override(params: Dict, year: int, **fields) -> Dict:
    unknown = [k for k in fields if k not in OVERRIDE_FIELDS]
    if unknown:
        raise ValueError(f"Unknown override fields: {unknown}")
    year = int(year)
    overrides = deepcopy(params.get("yearly_overrides") or {})
    year_ov = dict(overrides.get(year, overrides.get(str(year), {})))
    overrides.pop(str(year), None)
    year_ov.update(fields)
    overrides[year] = year_ov
    return update_parameters(params, {"yearly_overrides": overrides})


def clear_year_override(params: Dict, year: int, field: str = None) -> Dict:
    year = int(year)
    overrides = deepcopy(params.get("yearly_overrides") or {})
    key = year if year in overrides else str(year)
    if key in overrides:
        if field is None:
            del overrides[key]
        else:
            overrides[key].pop(field, None)
            if not overrides[key]:
                del overrides[key]
    return update_parameters(params, {"yearly_overrides": overrides})


def apply_scenario_preset(name: str, base: Dict = None) -> Dict:
    if name not in SCENARIO_PRESETS:
        raise ValueError(f"Unknown scenario preset {name!r}; choose from {sorted(SCENARIO_PRESETS)}")
    logger.debug("Applying scenario preset %s", name)
    base = default_parameters() if base is None else base
    return update_parameters(base, SCENARIO_PRESETS[name]["parameters"])


def get_capex_scenario(key: str) -> Dict:
    if key not in CAPEX_SCENARIOS:
        raise ValueError(f"Unknown CAPEX scenario {key!r}; choose from {sorted(CAPEX_SCENARIOS)}")
    return CAPEX_SCENARIOS[key]

# ── Validation ──────────────────────────────────────────────

_NON_NEGATIVE = (
    "flagship_students", "franchise_count", "students_per_franchise", "adoption_students",
    "flagship_tuition", "adoption_license_fee", "franchise_royalty_rate", "marketing_fee_rate",
    "franchise_fee", "kit_cost_per_student", "kit_sales_start_year", "tuition_increase_rate",
    "technology_opex_rate", "marketing_rate", "franchise_growth_rate",
)


def _is_number(v):
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def validate_parameters(params: Dict) -> List[str]:
    errs = []
    for k in _NON_NEGATIVE:
        v = params.get(k)
        if not _is_number(v):
            errs.append(f"{k} must be a number, got {v!r}")
        elif v < 0:
            errs.append(f"{k} must be >= 0, got {v}")
    churn = params.get("churn_rate")
    if not _is_number(churn) or not 0 <= churn <= 1:
        errs.append(f"churn_rate must be between 0 and 1, got {churn!r}")
    dr = params.get("discount_rate")
    if not _is_number(dr) or dr <= -1:
        errs.append(f"discount_rate must be > -1, got {dr!r}")
    if params.get("capex_scenario") not in CAPEX_SCENARIOS:
        errs.append(f"capex_scenario must be one of {sorted(CAPEX_SCENARIOS)}, got {params.get('capex_scenario')!r}")
    if not isinstance(params.get("yearly_overrides", {}), dict):
        errs.append("yearly_overrides must be a mapping of year -> fields")
    return errs


def check_parameters(params: Dict) -> None:
    errs = validate_parameters(params)
    if errs:
        raise ValueError("Invalid parameters:\n- " + "\n- ".join(errs))

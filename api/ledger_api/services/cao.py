"""CAO (collective labour agreement) salary scale helpers.

Salary tables list the gross monthly wage for a 36-hour week per scale and
step ("trede"). Actual pay is pro-rated to the contracted hours.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

CAO_FULL_TIME_HOURS = 36.0
WEEKS_PER_MONTH = 4.33

CaoSalaryTable = dict[str, dict[str, float]]

DEFAULT_CAO_SALARY_TABLE: CaoSalaryTable = {
    "6": {
        "1": 2500.0,
        "2": 2600.0,
        "3": 2700.0,
        "4": 2800.0,
        "5": 2900.0,
        "6": 3000.0,
        "7": 3100.0,
        "8": 3200.0,
        "9": 3300.0,
        "10": 3400.0,
        "11": 3500.0,
        "12": 3600.0,
    },
}


@dataclass(slots=True)
class ScaleMatch:
    scale: str
    trede: str
    bruto_36h: float
    expected_gross_monthly: float
    deviation: float


def parse_cao_salary_table(raw: str | None) -> CaoSalaryTable:
    if not raw:
        return {scale: dict(steps) for scale, steps in DEFAULT_CAO_SALARY_TABLE.items()}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("cao salary table must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise ValueError("cao salary table must be a JSON object keyed by scale")

    table: CaoSalaryTable = {}
    for scale, steps in parsed.items():
        if not isinstance(steps, dict):
            raise ValueError(f"cao scale {scale} must map trede to amount")
        table[str(scale)] = {str(trede): float(amount) for trede, amount in steps.items()}
    return table


def bruto_36h(table: CaoSalaryTable, scale: str, trede: str) -> float:
    return table.get(str(scale), {}).get(str(trede), 0.0)


def gross_monthly_for_hours(bruto: float, hours_per_week: float) -> float:
    if not bruto or not hours_per_week:
        return 0.0
    return round(bruto * (hours_per_week / CAO_FULL_TIME_HOURS), 2)


def hourly_wage(gross_monthly: float, hours_per_week: float) -> float | None:
    if not gross_monthly or not hours_per_week:
        return None
    return round(gross_monthly / (hours_per_week * WEEKS_PER_MONTH), 2)


def nearest_scale_step(table: CaoSalaryTable, gross_monthly: float, hours_per_week: float) -> ScaleMatch | None:
    if not gross_monthly or not hours_per_week:
        return None

    best: ScaleMatch | None = None
    for scale in sorted(table, key=_numeric_key):
        for trede in sorted(table[scale], key=_numeric_key):
            bruto = table[scale][trede]
            expected = gross_monthly_for_hours(bruto, hours_per_week)
            deviation = round(gross_monthly - expected, 2)
            if best is None or abs(deviation) < abs(best.deviation):
                best = ScaleMatch(
                    scale=scale,
                    trede=trede,
                    bruto_36h=bruto,
                    expected_gross_monthly=expected,
                    deviation=deviation,
                )
    return best


def _numeric_key(value: Any) -> tuple[int, Any]:
    try:
        return (0, float(value))
    except (TypeError, ValueError):
        return (1, str(value))

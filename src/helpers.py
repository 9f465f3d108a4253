"""
General-purpose helpers shared across the pipeline.

This module centralizes reusable pieces that every stage needs:
- Error types raised by the loader, normalizer and aggregator.
- The ISTAT age-class catalogue (fine bands and macro bands).
- The declarative mapping of wide measure columns to (year, gender).
- Calendar utilities (leap years, days before a month).
- Config coercions and required-column checks.

IMPORTANT: This module does not import project-specific modules to avoid circular
dependencies. Callers must supply any configuration defaults they need.
"""
from __future__ import annotations

import numpy as np
import pandas as pd

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PipelineError(ValueError):
    """Base class for all errors that abort a pipeline run."""


class LoadError(PipelineError):
    """Missing or malformed input file, column or cell."""


class NormalizationError(PipelineError):
    """Undecodable calendar code, invalid date, negative count or unknown age code."""


class AggregationError(PipelineError):
    """Grouping key not present in the records, or incompatible series."""


# ---------------------------------------------------------------------------
# Age catalogue
# ---------------------------------------------------------------------------

# CL_ETA code -> fine age band
AGE_CLASSES: dict[int, str] = {0: "0", 1: "1-5"}
AGE_CLASSES.update({k: f"{5 * k - 4}-{5 * k}" for k in range(2, 21)})
AGE_CLASSES[21] = "100+"

MACRO_AGE_ORDER = [
    "0-45", "46-50", "51-55", "56-60", "61-65", "66-70",
    "71-75", "76-80", "81-85", "86-90", "91+",
]


def _macro_for_code(code: int) -> str:
    """
    Macro band of a CL_ETA code.

    Codes 0..9 (ages 0-45) collapse into '0-45', codes 10..18 keep their
    five-year band, codes 19..21 (ages 91+) collapse into '91+'.
    """
    if code <= 9:
        return "0-45"
    if code >= 19:
        return "91+"
    return AGE_CLASSES[code]


MACRO_AGE_CLASSES: dict[str, str] = {
    AGE_CLASSES[k]: _macro_for_code(k) for k in AGE_CLASSES
}

AGE_ORDER = [AGE_CLASSES[k] for k in sorted(AGE_CLASSES)]


# ---------------------------------------------------------------------------
# Wide measure columns
# ---------------------------------------------------------------------------

# (source column, year, gender); T_xx totals are redundant and never unpivoted.
MEASURE_COLUMNS: list[tuple[str, int, str]] = [
    ("M_15", 2015, "male"),
    ("M_16", 2016, "male"),
    ("M_17", 2017, "male"),
    ("M_18", 2018, "male"),
    ("M_19", 2019, "male"),
    ("M_20", 2020, "male"),
    ("F_15", 2015, "female"),
    ("F_16", 2016, "female"),
    ("F_17", 2017, "female"),
    ("F_18", 2018, "female"),
    ("F_19", 2019, "female"),
    ("F_20", 2020, "female"),
]

# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

def leap_mask(years) -> np.ndarray:
    """Vectorized Gregorian leap-year test."""
    y = np.asarray(years, dtype=int)
    return ((y % 4 == 0) & (y % 100 != 0)) | (y % 400 == 0)


# Days before each month in a non-leap year (index 1..12).
_CUM_DAYS = [0, 0, 31, 59, 90, 120, 151, 181, 212, 243, 273, 304, 334]


def _days_before_month(month: np.ndarray, leap: np.ndarray) -> np.ndarray:
    """
    Vectorized count of days preceding `month`, adding the leap day from
    March onward when `leap` is True.
    """
    month = np.asarray(month, dtype=int)
    leap = np.asarray(leap, dtype=bool)
    base = np.asarray(_CUM_DAYS, dtype=int)[month]
    return base + ((month >= 3) & leap).astype(int)


# ---------------------------------------------------------------------------
# List coercions for config-like values
# ---------------------------------------------------------------------------

def _coerce_year_list(x) -> list[int] | None:
    """
    Coerce a config value to a sorted list of distinct integer years.

    Accepts a list of ints/strings, a 'start-end' range string, or a
    comma/semicolon separated string. Returns None if `x` is empty or None.
    """
    if x is None:
        return None
    if isinstance(x, (int, np.integer)):
        return [int(x)]
    if isinstance(x, str):
        s = x.strip()
        if not s:
            return None
        if "-" in s and "," not in s and ";" not in s:
            lo, hi = s.split("-", 1)
            return list(range(int(lo), int(hi) + 1))
        return sorted({int(t) for t in s.replace(",", ";").split(";") if t.strip()})
    years = sorted({int(v) for v in x})
    return years or None


def _require_columns(df: pd.DataFrame, cols, error_cls=ValueError, where: str = "") -> None:
    """
    Raise `error_cls` naming every column of `cols` missing from `df`.
    """
    missing = [c for c in cols if c not in df.columns]
    if missing:
        loc = f" in {where}" if where else ""
        raise error_cls(f"Missing required column(s){loc}: {missing}")

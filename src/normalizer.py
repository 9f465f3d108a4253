# src/normalizer.py
"""
Calendar normalization of the daily deaths table.

The loader output is wide (one column per year x gender). This module:
  1) unpivots the measure columns into long rows (year, gender, death_count);
  2) decodes the packed calendar code (MDD) into month / day_of_month;
  3) maps every date onto a day_index that is comparable across leap and
     non-leap years;
  4) drops 29 February of non-leap years;
  5) truncates every year to the last day_index reported for the current year;
  6) attaches fine and macro age classes.

Every function returns a new frame; inputs are never modified.
"""
from __future__ import annotations

import warnings

import numpy as np
import pandas as pd

from helpers import (
    NormalizationError,
    MEASURE_COLUMNS,
    AGE_CLASSES,
    MACRO_AGE_CLASSES,
    AGE_ORDER,
    MACRO_AGE_ORDER,
    _days_before_month,
    leap_mask,
    _require_columns,
)

ID_COLUMNS = ["area_id", "area_name", "province_name", "region_name", "calendar_code", "age_code"]

RECORD_COLUMNS = [
    "area_id", "area_name", "province_name", "region_name",
    "year", "month", "day_of_month", "day_index",
    "age_code", "age_class", "macro_age_class", "gender", "death_count",
]


def unpivot_measures(deaths: pd.DataFrame, measure_columns=MEASURE_COLUMNS) -> pd.DataFrame:
    """
    Wide-to-long reshape driven by an explicit list of (column, year, gender).

    All non-measure columns are carried unchanged onto every output row.
    """
    cols = [c for c, _, _ in measure_columns]
    _require_columns(deaths, cols, NormalizationError, where="deaths table")
    id_vars = [c for c in deaths.columns if c not in cols and c[:2] not in ("M_", "F_", "T_")]

    long = deaths.melt(id_vars=id_vars, value_vars=cols,
                       var_name="_measure", value_name="death_count")
    year_of = {c: y for c, y, _ in measure_columns}
    gender_of = {c: g for c, _, g in measure_columns}
    long["year"] = long["_measure"].map(year_of).astype("int64")
    long["gender"] = long["_measure"].map(gender_of)
    long["death_count"] = long["death_count"].astype("Int64")
    return long.drop(columns="_measure")


def decode_calendar_code(codes: pd.Series) -> pd.DataFrame:
    """
    Split packed MDD codes (e.g. 101 = 1 January, 229 = 29 February,
    415 = 15 April) into month and day_of_month.

    29 February is accepted here regardless of year; whether it exists is
    decided per year by `drop_invalid_leap_days`.
    """
    codes = pd.Series(codes)
    month = codes // 100
    day = codes % 100
    # Feb may have 29 days here; year-specific validity is checked later.
    max_day = pd.Series([0, 31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31])
    ok = month.between(1, 12)
    ok &= day.ge(1) & day.le(max_day.reindex(month.where(ok, 0).to_numpy()).to_numpy())
    if not ok.all():
        i = (~ok).idxmax()
        raise NormalizationError(
            f"row {i}: calendar code {codes.loc[i]!r} does not decode to a valid (month, day)"
        )
    return pd.DataFrame({"month": month.astype("int64"), "day_of_month": day.astype("int64")},
                        index=codes.index)


def compute_day_index(year, month, day) -> np.ndarray:
    """
    Seasonal day position, aligned across leap and non-leap years.

    Non-leap: Jan d -> d, Feb d -> 31 + d, Mar d -> 59 + d, Apr d -> 90 + d.
    Leap:     Jan d -> d - 1, Feb d -> 31 + d - 1, Mar d -> 60 + d - 1,
              Apr d -> 91 + d - 1.
    Later months follow the same rule. 1 January of a leap year maps to 0,
    which downstream stages exclude with `day_index > 0`.
    """
    year = np.asarray(year, dtype=int)
    month = np.asarray(month, dtype=int)
    day = np.asarray(day, dtype=int)
    leap = leap_mask(year)
    return _days_before_month(month, leap) + day - leap.astype(int)


def drop_invalid_leap_days(records: pd.DataFrame) -> pd.DataFrame:
    """
    Remove 29 February rows of non-leap years. Such dates do not exist and are
    never reinterpreted as 1 March.
    """
    leap = leap_mask(records["year"])
    bad = (records["month"].to_numpy() == 2) & (records["day_of_month"].to_numpy() == 29) & ~leap
    return records.loc[~bad].reset_index(drop=True)


def truncate_to_reported(records: pd.DataFrame, current_year: int) -> pd.DataFrame:
    """
    Keep only day_index positions up to the latest one with at least one
    reported death in `current_year`, across all years.
    """
    cur = records[(records["year"] == current_year) & (records["death_count"].fillna(0) > 0)]
    if cur.empty:
        warnings.warn(f"No reported deaths for {current_year}; table not truncated.")
        return records.copy()
    last = int(cur["day_index"].max())
    out = records.loc[records["day_index"] <= last].reset_index(drop=True)
    print(f"[normalizer] Truncated to day_index <= {last} ({len(records) - len(out)} rows dropped).")
    return out


def attach_age_classes(records: pd.DataFrame,
                       age_classes: dict = AGE_CLASSES,
                       macro_age_classes: dict = MACRO_AGE_CLASSES) -> pd.DataFrame:
    """
    Add `age_class` (fine band) and `macro_age_class` from the age code.

    Both are ordered categoricals (youngest band first), so tables grouped or
    sorted on them come out in age order rather than string order.
    """
    out = records.copy()
    fine = out["age_code"].map(age_classes)
    unknown = fine.isna()
    if unknown.any():
        codes = sorted(out.loc[unknown, "age_code"].unique().tolist())
        raise NormalizationError(f"Unknown age code(s): {codes}")
    macro = fine.map(macro_age_classes)
    out["age_class"] = pd.Categorical(fine, categories=AGE_ORDER, ordered=True)
    out["macro_age_class"] = pd.Categorical(macro, categories=MACRO_AGE_ORDER, ordered=True)
    return out


def check_counts(records: pd.DataFrame) -> None:
    neg = records["death_count"].fillna(0) < 0
    if neg.any():
        r = records.loc[neg].iloc[0]
        raise NormalizationError(
            f"Negative death_count {r['death_count']} for area {r['area_id']}, "
            f"year {r['year']}, calendar code {r.get('calendar_code')}, gender {r['gender']}"
        )


def normalize(deaths: pd.DataFrame, cfg: dict | None = None) -> pd.DataFrame:
    """
    Full normalization stage: loader frame -> DeathRecords.

    Parameters
    ----------
    deaths : pd.DataFrame
        Output of `data_loaders.load_deaths` (canonical id columns + measures).
    cfg : dict, optional
        Pipeline config; only `years.current` is read (default 2020).

    Returns
    -------
    pd.DataFrame
        Columns RECORD_COLUMNS, sorted by area, year, day_index, age_code, gender.
    """
    current_year = int(((cfg or {}).get("years") or {}).get("current", 2020))
    _require_columns(deaths, ID_COLUMNS, NormalizationError, where="deaths table")

    cal = decode_calendar_code(deaths["calendar_code"])
    wide = pd.concat([deaths, cal], axis=1)
    long = unpivot_measures(wide)
    check_counts(long)

    long = drop_invalid_leap_days(long)
    long["day_index"] = compute_day_index(long["year"], long["month"], long["day_of_month"])
    long = truncate_to_reported(long, current_year)
    long = attach_age_classes(long)

    out = (long[RECORD_COLUMNS]
           .sort_values(["area_id", "year", "day_index", "age_code", "gender"], kind="mergesort")
           .reset_index(drop=True))
    print(f"[normalizer] {len(out)} death records over {out['area_id'].nunique()} areas, "
          f"day_index {out['day_index'].min()}..{out['day_index'].max()}.")
    return out

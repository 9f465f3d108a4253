# src/aggregator.py
"""
Grouped sums of death counts into the "2020" and "baseline" year buckets.

The baseline value of a group is its summed deaths divided by the number of
distinct years that actually contributed a count to the group, so a year that
is missing for some area does not deflate that area's average. Absent counts
(<NA>) are skipped, never summed as zero; a group where every count is absent
keeps an absent value.
"""
from __future__ import annotations

import numpy as np
import pandas as pd

from helpers import AggregationError, _coerce_year_list

CURRENT = "2020"
BASELINE = "baseline"

AREA_LEVELS = {
    "area": "area_id",
    "province": "province_name",
    "region": "region_name",
}


def _bucket_years(year_filter: str, years_cfg: dict | None) -> list[int]:
    years_cfg = years_cfg or {}
    current = int(years_cfg.get("current", 2020))
    if year_filter in (CURRENT, str(current), "current"):
        return [current]
    if year_filter == BASELINE:
        base = _coerce_year_list(years_cfg.get("baseline"))
        return base if base is not None else list(range(current - 5, current))
    raise AggregationError(f"Unknown year bucket {year_filter!r}; expected {CURRENT!r} or {BASELINE!r}")


def add_area_groups(records: pd.DataFrame, level: str = "area") -> pd.DataFrame:
    """
    Add an `area_group` column at the requested geographic level:
    'area' (municipality), 'province', 'region' or 'italy' (single group).
    """
    out = records.copy()
    if level == "italy":
        out["area_group"] = "Italia"
        return out
    if level not in AREA_LEVELS:
        raise AggregationError(f"Unknown area level {level!r}; expected one of {sorted(AREA_LEVELS) + ['italy']}")
    col = AREA_LEVELS[level]
    if col not in out.columns:
        raise AggregationError(f"Area level {level!r} needs column {col!r}")
    out["area_group"] = out[col]
    return out


def aggregate(records: pd.DataFrame, group_keys, year_filter: str,
              years_cfg: dict | None = None) -> pd.DataFrame:
    """
    Sum death counts by `group_keys` within one year bucket.

    Parameters
    ----------
    records : pd.DataFrame
        DeathRecords (see normalizer.RECORD_COLUMNS), possibly with `area_group`.
    group_keys : list[str]
        Any subset of the record columns, e.g. ['area_id', 'day_index'] or
        ['macro_age_class', 'gender']. An empty list gives one grand total.
    year_filter : {'2020', 'baseline'}
        Year bucket to aggregate.
    years_cfg : dict, optional
        {'current': 2020, 'baseline': [2015, ..., 2019]}.

    Returns
    -------
    pd.DataFrame
        group_keys + ['year_bucket', 'deaths', 'n_years', 'value'] where
        value = deaths / n_years, absent when n_years == 0.

    Raises
    ------
    AggregationError
        If a grouping key is not a column of `records`, or the bucket is unknown.
    """
    keys = list(group_keys)
    missing = [k for k in keys if k not in records.columns]
    if missing:
        raise AggregationError(f"Unknown grouping key(s) {missing}; available: {list(records.columns)}")
    if "year" in keys:
        raise AggregationError("'year' cannot be a grouping key; it is folded into the year bucket")

    years = _bucket_years(year_filter, years_cfg)
    sub = records.loc[records["year"].isin(years), keys + ["year", "death_count"]].copy()
    sub["death_count"] = sub["death_count"].astype("Float64")
    # a year contributes to a group only through a present count
    sub["_year_present"] = sub["year"].where(sub["death_count"].notna().to_numpy())

    if keys:
        g = sub.groupby(keys, dropna=False, sort=True, observed=True)
        out = pd.DataFrame({
            "deaths": g["death_count"].sum(min_count=1).astype(float),
            "n_years": g["_year_present"].nunique(),
        }).reset_index()
    else:
        out = pd.DataFrame({
            "deaths": [float(sub["death_count"].sum(min_count=1)) if len(sub) else np.nan],
            "n_years": [int(sub["_year_present"].nunique())],
        })

    out["deaths"] = out["deaths"].astype(float)
    out["n_years"] = out["n_years"].astype("int64")
    out["value"] = out["deaths"].where(out["n_years"] > 0) / out["n_years"].where(out["n_years"] > 0)
    out.insert(len(keys), "year_bucket", BASELINE if year_filter == BASELINE else str(years[0]))
    return out


def aggregate_both(records: pd.DataFrame, group_keys, years_cfg: dict | None = None):
    """
    Convenience: (current-year series, baseline series) on the same keys.
    """
    cur = aggregate(records, group_keys, CURRENT, years_cfg)
    base = aggregate(records, group_keys, BASELINE, years_cfg)
    return cur, base

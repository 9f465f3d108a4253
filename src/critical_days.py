# src/critical_days.py
"""
Headline milestones of an excess-mortality wave, per area.

On a (smoothed) ratio series restricted to day_index > 0:
  onset  : first day_index with ratio > threshold
  peak   : day_index of the maximum ratio (earliest on ties), with its magnitude
  return : first day_index after the peak with ratio < threshold
Each milestone is absent when no day qualifies within the observed window.
"""
from __future__ import annotations

import pandas as pd
from tqdm import tqdm

from helpers import AggregationError

DEFAULT_THRESHOLD = 1.5

CRITICAL_COLUMNS = ["onset_day_index", "peak_day_index", "return_day_index", "peak_magnitude"]


def _as_series(series, index_col: str = "day_index", value_col: str = "ratio") -> pd.Series:
    if isinstance(series, pd.DataFrame):
        missing = [c for c in (index_col, value_col) if c not in series.columns]
        if missing:
            raise AggregationError(f"Ratio series lacks column(s) {missing}")
        series = series.set_index(index_col)[value_col]
    elif isinstance(series, dict):
        series = pd.Series(series, dtype=float)
    s = pd.Series(series, copy=True).astype(float)
    s.index = s.index.astype(int)
    return s.sort_index()


def extract(series, threshold: float = DEFAULT_THRESHOLD) -> dict:
    """
    Critical days of one area's ratio series.

    Parameters
    ----------
    series : pd.Series | pd.DataFrame | dict
        Ratio by day_index (Series/dict), or a frame with 'day_index' and 'ratio'.
    threshold : float
        Ratio level marking excess mortality.

    Returns
    -------
    dict
        {'onset_day_index', 'peak_day_index', 'return_day_index', 'peak_magnitude'};
        missing milestones are None.
    """
    s = _as_series(series)
    s = s[s.index > 0].dropna()

    out = dict.fromkeys(CRITICAL_COLUMNS)
    if s.empty:
        return out

    above = s.index[s.to_numpy() > threshold]
    if len(above):
        out["onset_day_index"] = int(above.min())

    # idxmax returns the first occurrence, i.e. the smallest day_index on ties
    peak_day = int(s.idxmax())
    out["peak_day_index"] = peak_day
    out["peak_magnitude"] = float(s.loc[peak_day])

    after = s[s.index > peak_day]
    below = after.index[after.to_numpy() < threshold]
    if len(below):
        out["return_day_index"] = int(below.min())
    return out


def extract_all(
    ratio_records: pd.DataFrame,
    area_key: str = "area_id",
    threshold: float = DEFAULT_THRESHOLD,
    progress: bool = True,
) -> pd.DataFrame:
    """
    One CriticalDays row per area of a ratio table (see excess.compute_ratio_delta).
    Day fields are nullable integers.
    """
    missing = [c for c in (area_key, "day_index", "ratio") if c not in ratio_records.columns]
    if missing:
        raise AggregationError(f"Ratio table lacks column(s) {missing}")

    groups = ratio_records.groupby(area_key, sort=True, observed=True)
    rows = []
    for area, grp in tqdm(groups, total=groups.ngroups, desc="Critical days",
                          unit="area", disable=not progress):
        if grp["day_index"].duplicated().any():
            raise AggregationError(
                f"Area {area!r} has several ratio rows per day_index; aggregate over the other keys first")
        rows.append({area_key: area, **extract(grp[["day_index", "ratio"]], threshold)})

    out = pd.DataFrame(rows, columns=[area_key] + CRITICAL_COLUMNS)
    for c in ("onset_day_index", "peak_day_index", "return_day_index"):
        out[c] = out[c].astype("Int64")
    out["peak_magnitude"] = out["peak_magnitude"].astype(float)
    n_onset = int(out["onset_day_index"].notna().sum())
    print(f"[critical] {len(out)} areas; {n_onset} cross the {threshold} ratio threshold.")
    return out

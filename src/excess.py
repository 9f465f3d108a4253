# src/excess.py
"""
Ratio / delta of the current year against the historical baseline.

Both series are keyed by the same grouping keys (see aggregator.aggregate).
Ratio is current / baseline and delta is current - baseline. Either is left
absent (NaN) whenever an input is absent, and both are absent when the
baseline is zero, so no infinities ever reach the output.

Optional smoothing replaces each series by its centered moving average along
day_index, computed independently per partition (e.g. per area, or per
area x gender), before the ratio is taken.
"""
from __future__ import annotations

import numpy as np
import pandas as pd

from helpers import AggregationError
from aggregator import aggregate_both


def _moving_average_1d(s: pd.Series, window: int) -> pd.Series:
    """
    Centered moving average of a day_index-indexed series. The series is first
    laid on a contiguous day_index grid so that gaps break the window.
    """
    s = s.sort_index()
    if s.empty:
        return s.astype(float)
    grid = pd.RangeIndex(int(s.index.min()), int(s.index.max()) + 1)
    full = s.astype(float).reindex(grid)
    sm = full.rolling(window=int(window), center=True, min_periods=int(window)).mean()
    return sm.reindex(s.index)


def centered_moving_average(
    series: pd.DataFrame,
    partition_keys=None,
    window: int = 7,
    value_col: str = "value",
    index_col: str = "day_index",
) -> pd.DataFrame:
    """
    Smooth `value_col` with a centered moving average of width `window`.

    The smoothed value is absent unless all `window` positions around it exist
    and are present, i.e. at the first and last window//2 day_index positions
    of each partition and around internal gaps.

    Parameters
    ----------
    series : pd.DataFrame
        Must contain `index_col`, `value_col` and every partition key.
    partition_keys : list[str], optional
        Columns identifying independent series. None or [] = single series.
    window : int
        Window width (odd).

    Returns
    -------
    pd.DataFrame
        Copy of `series` with `value_col` smoothed, sorted by partition and day.
    """
    keys = list(partition_keys or [])
    need = keys + [index_col, value_col]
    missing = [c for c in need if c not in series.columns]
    if missing:
        raise AggregationError(f"Cannot smooth: missing column(s) {missing}")
    if int(window) < 1 or int(window) % 2 == 0:
        raise ValueError(f"Moving-average window must be a positive odd integer, got {window}")
    if series.duplicated(keys + [index_col]).any():
        raise AggregationError(
            f"Cannot smooth: duplicate {index_col} within partitions {keys}; "
            f"include every grouping key in the partition")

    out = series.sort_values(keys + [index_col], kind="mergesort").reset_index(drop=True)
    if not keys:
        s = out.set_index(index_col)[value_col]
        out[value_col] = _moving_average_1d(s, window).to_numpy()
        return out

    smoothed = np.empty(len(out), dtype=float)
    for _, idx in out.groupby(keys, dropna=False, sort=False, observed=True).indices.items():
        s = pd.Series(out[value_col].to_numpy(dtype=float, na_value=np.nan)[idx],
                      index=out[index_col].to_numpy()[idx])
        smoothed[idx] = _moving_average_1d(s, window).to_numpy()
    out[value_col] = smoothed
    return out


def compute_ratio_delta(
    current: pd.DataFrame,
    baseline: pd.DataFrame,
    keys,
    *,
    smooth: bool = False,
    window: int = 7,
    partition_keys=None,
) -> pd.DataFrame:
    """
    Join current-year and baseline series on `keys` and derive ratio and delta.

    Parameters
    ----------
    current, baseline : pd.DataFrame
        AggregatedSeries with a `value` column and every key in `keys`.
    keys : list[str]
        Shared grouping keys (without the year bucket).
    smooth : bool
        If True, both series are smoothed with `centered_moving_average` first
        and ratio/delta are computed from the smoothed values.
    window : int
        Moving-average width when smoothing.
    partition_keys : list[str], optional
        Partitions for smoothing; defaults to `keys` without 'day_index'.

    Returns
    -------
    pd.DataFrame
        keys + ['value_2020', 'value_baseline', 'ratio', 'delta'].
    """
    keys = list(keys)
    for name, frame in (("current", current), ("baseline", baseline)):
        missing = [k for k in keys + ["value"] if k not in frame.columns]
        if missing:
            raise AggregationError(f"{name} series lacks column(s) {missing}")

    cur = current[keys + ["value"]]
    base = baseline[keys + ["value"]]
    if smooth:
        if "day_index" not in keys:
            raise AggregationError("Smoothing needs 'day_index' among the keys")
        part = [k for k in keys if k != "day_index"] if partition_keys is None else list(partition_keys)
        cur = centered_moving_average(cur, part, window)
        base = centered_moving_average(base, part, window)

    merged = pd.merge(
        cur.rename(columns={"value": "value_2020"}),
        base.rename(columns={"value": "value_baseline"}),
        on=keys, how="outer", sort=True,
    )
    v20 = merged["value_2020"].astype(float)
    vb = merged["value_baseline"].astype(float)
    merged["value_2020"] = v20
    merged["value_baseline"] = vb
    merged["delta"] = (v20 - vb).where(vb != 0)
    merged["ratio"] = (v20 / vb.where(vb != 0)).where(v20.notna())
    merged = merged[keys + ["value_2020", "value_baseline", "ratio", "delta"]]
    return merged.reset_index(drop=True)


def excess_series(
    records: pd.DataFrame,
    keys,
    years_cfg: dict | None = None,
    *,
    smooth: bool = False,
    window: int = 7,
    partition_keys=None,
) -> pd.DataFrame:
    """
    Aggregate both year buckets on `keys` and return the ratio/delta table.
    """
    cur, base = aggregate_both(records, keys, years_cfg)
    out = compute_ratio_delta(cur, base, keys, smooth=smooth, window=window,
                              partition_keys=partition_keys)
    print(f"[excess] {len(out)} rows on {list(keys)}"
          f"{f' (smoothed, window {window})' if smooth else ''}.")
    return out

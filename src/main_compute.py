# ------------------------------------------------------------------------------
# Excess-mortality pipeline for Italian municipal daily deaths, 2015-2020.
# - Loader      : deaths / population / validated areas / reference list
# - Normalizer  : wide -> long, leap-year-aware day_index, truncation
# - Aggregator  : 2020 and 2015-2019 baseline buckets on arbitrary keys
# - Excess      : ratio / delta, optionally on 7-day centered moving averages
# - Critical    : onset / peak / return day per area
# All outputs are in-memory DataFrames returned by run_pipeline().
# ------------------------------------------------------------------------------


from __future__ import annotations
import os
import sys
import pandas as pd

from data_loaders import load_all_data, _load_config
from normalizer import normalize
from aggregator import add_area_groups
from excess import excess_series
from critical_days import extract_all
from summaries import coverage_summary, excess_summary, excess_rates
from helpers import PipelineError

# ------------------------------- Config loading -------------------------------
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
CONFIG_PATH = os.path.join(ROOT_DIR, "config.yaml")


def run_pipeline(cfg: dict, paths: dict | None = None, data: dict | None = None) -> dict:
    """
    Run every stage and return the result tables.

    Parameters
    ----------
    cfg : dict
        Merged configuration (see data_loaders.return_default_config).
    paths : dict, optional
        Resolved input paths; required unless `data` is given.
    data : dict, optional
        Pre-loaded inputs as returned by data_loaders.load_all_data.

    Returns
    -------
    dict[str, pd.DataFrame]
        records, area_excess, area_excess_smoothed, group_excess_smoothed,
        age_excess, gender_excess, critical_days, coverage, area_summary.
    """
    if data is None:
        if paths is None:
            raise ValueError("run_pipeline needs either `paths` or pre-loaded `data`")
        data = load_all_data(paths, cfg)

    years_cfg = cfg.get("years", {})
    window = int(cfg.get("smoothing", {}).get("window", 7))
    threshold = float(cfg.get("critical_days", {}).get("threshold", 1.5))
    level = cfg.get("aggregation", {}).get("area_level", "area")
    verbose = bool(cfg.get("diagnostics", {}).get("verbose", True))
    total_code = int(cfg.get("population", {}).get("total_age_code", 999))

    records = normalize(data["deaths"], cfg)
    window_records = add_area_groups(records[records["day_index"] > 0], level)

    # Daily series per area, raw and smoothed
    area_keys = ["area_group", "day_index"]
    area_excess = excess_series(window_records, area_keys, years_cfg)
    area_smoothed = excess_series(window_records, area_keys, years_cfg,
                                  smooth=True, window=window)
    group_smoothed = excess_series(window_records, ["area_group", "gender", "day_index"], years_cfg,
                                   smooth=True, window=window)

    # Whole-window breakdowns for the age and gender tables
    age_excess = excess_series(window_records, ["macro_age_class", "gender"], years_cfg)
    gender_excess = excess_series(window_records, ["gender", "day_index"], years_cfg)

    critical = extract_all(area_smoothed, "area_group", threshold, progress=verbose)

    coverage = coverage_summary(data["deaths"], data["population"], data.get("reference"),
                                total_age_code=total_code)
    summary = excess_summary(area_excess, ["area_group"])
    if level == "area":
        summary = excess_rates(summary, data["population"], area_key="area_group")

    print(f"[pipeline] Done: {records['area_id'].nunique()} areas, "
          f"{len(critical)} critical-day rows at level '{level}'.")
    return {
        "records": records,
        "area_excess": area_excess,
        "area_excess_smoothed": area_smoothed,
        "group_excess_smoothed": group_smoothed,
        "age_excess": age_excess,
        "gender_excess": gender_excess,
        "critical_days": critical,
        "coverage": coverage,
        "area_summary": summary,
    }


def main(config_path: str = CONFIG_PATH) -> int:
    CFG, PATHS = _load_config(ROOT_DIR, config_path)
    try:
        results = run_pipeline(CFG, PATHS)
    except PipelineError as e:
        print(f"[pipeline] Aborted: {e}", file=sys.stderr)
        return 1

    crit = results["critical_days"].dropna(subset=["onset_day_index"])
    if crit.empty:
        print("[pipeline] No area crossed the excess threshold.")
    else:
        top = crit.sort_values("peak_magnitude", ascending=False).head(10)
        with pd.option_context("display.width", 120):
            print(top.to_string(index=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())

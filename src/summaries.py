# src/summaries.py
"""
Report-level tables built on top of the pipeline outputs.

These are plain DataFrames for the rendering layer (tables, maps): coverage of
the validated areas, excess deaths over a day_index window, and excess deaths
per 1,000 residents.
"""
from __future__ import annotations

import numpy as np
import pandas as pd

from helpers import AggregationError, _require_columns


def population_totals(population: pd.DataFrame, by_gender: bool = False,
                      total_age_code: int = 999) -> pd.DataFrame:
    """
    Resident population per area from the all-ages rows of the register.

    Returns area_id, area_name, population (or, with by_gender=True, one row per
    area x gender). Areas without a total row are absent from the output.
    """
    _require_columns(population, ["area_id", "area_name", "age_code", "male", "female"],
                     AggregationError, where="population register")
    tot = population.loc[population["age_code"] == total_age_code,
                         ["area_id", "area_name", "male", "female"]]
    tot = tot.drop_duplicates("area_id")
    if by_gender:
        out = tot.melt(id_vars=["area_id", "area_name"], value_vars=["male", "female"],
                       var_name="gender", value_name="population")
        return out.sort_values(["area_id", "gender"]).reset_index(drop=True)
    out = tot[["area_id", "area_name"]].copy()
    out["population"] = (tot["male"].astype("Float64") + tot["female"].astype("Float64")).astype(float)
    return out.reset_index(drop=True)


def coverage_summary(deaths: pd.DataFrame, population: pd.DataFrame,
                     reference: pd.DataFrame | None = None,
                     total_age_code: int = 999) -> pd.DataFrame:
    """
    How much of the country the validated areas cover.

    Returns a one-row frame: areas_with_data, areas_reference, area_share,
    population_covered, population_total, population_share. Shares are absent
    when their denominator is unknown or zero.
    """
    pop = population_totals(population, total_age_code=total_age_code)
    covered_ids = set(deaths["area_id"].unique())
    ref_ids = set(reference["area_id"]) if reference is not None else set(pop["area_id"])

    pop_cov = float(pop.loc[pop["area_id"].isin(covered_ids), "population"].sum())
    pop_tot = float(pop["population"].sum())
    n_ref = len(ref_ids)
    row = {
        "areas_with_data": len(covered_ids),
        "areas_reference": n_ref,
        "area_share": len(covered_ids & ref_ids) / n_ref if n_ref else np.nan,
        "population_covered": pop_cov,
        "population_total": pop_tot,
        "population_share": pop_cov / pop_tot if pop_tot > 0 else np.nan,
    }
    print(f"[coverage] {row['areas_with_data']} of {n_ref} areas; "
          f"{row['population_share']:.1%} of residents covered.")
    return pd.DataFrame([row])


def excess_summary(ratio_records: pd.DataFrame, keys, day_min: int = 1,
                   day_max: int | None = None) -> pd.DataFrame:
    """
    Totals over a day_index window of a (non-smoothed) ratio table.

    Sums value_2020 and value_baseline per `keys` over
    day_min <= day_index <= day_max, counting only days where both sides are
    present, then recomputes the window ratio.
    """
    keys = list(keys)
    _require_columns(ratio_records, keys + ["day_index", "value_2020", "value_baseline"],
                     AggregationError, where="ratio table")
    win = ratio_records["day_index"] >= day_min
    if day_max is not None:
        win &= ratio_records["day_index"] <= day_max
    sub = ratio_records.loc[win & ratio_records["value_2020"].notna()
                            & ratio_records["value_baseline"].notna()]
    if keys:
        g = sub.groupby(keys, dropna=False, observed=True)
        out = pd.DataFrame({
            "deaths_2020": g["value_2020"].sum(),
            "deaths_baseline": g["value_baseline"].sum(),
            "n_days": g["day_index"].nunique(),
        }).reset_index()
    else:
        out = pd.DataFrame({
            "deaths_2020": [float(sub["value_2020"].sum())],
            "deaths_baseline": [float(sub["value_baseline"].sum())],
            "n_days": [int(sub["day_index"].nunique())],
        })
    out["excess_deaths"] = out["deaths_2020"] - out["deaths_baseline"]
    base = out["deaths_baseline"].where(out["deaths_baseline"] != 0)
    out["ratio"] = out["deaths_2020"] / base
    return out


def excess_rates(summary: pd.DataFrame, population: pd.DataFrame,
                 area_key: str = "area_id", per: int = 1000) -> pd.DataFrame:
    """
    Join an excess summary with population totals and express deaths per
    `per` residents. Rates are absent when the population is missing or zero.
    """
    _require_columns(summary, [area_key, "deaths_2020", "deaths_baseline", "excess_deaths"],
                     AggregationError, where="excess summary")
    pop = population_totals(population)[["area_id", "population"]]
    if area_key != "area_id":
        pop = pop.rename(columns={"area_id": area_key})
    out = summary.merge(pop, on=area_key, how="left")
    denom = out["population"].where(out["population"] > 0)
    out["deaths_2020_rate"] = out["deaths_2020"] / denom * per
    out["deaths_baseline_rate"] = out["deaths_baseline"] / denom * per
    out["excess_rate"] = out["excess_deaths"] / denom * per
    return out

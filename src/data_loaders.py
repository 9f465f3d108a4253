# src/data_loaders.py
import os
import yaml
import pandas as pd
import numpy as np
import geopandas as gpd

from helpers import LoadError, MEASURE_COLUMNS, _require_columns


def return_default_config():
    """
    Returns the default configuration dictionary
    """
    return {
        "paths": {
            "data_dir": "./data",
            "deaths_csv": "./data/comune_giorno.csv",
            "population_csv": "./data/popolazione_comuni.csv",
            "valid_areas_csv": "./data/comuni_validati.csv",
            "reference_areas": "./data/comuni_riferimento.csv",  # .csv or .shp
        },
        "diagnostics": {
            "verbose": True,
        },
        "loader": {
            "missing_sentinel": "n.d.",
            "encoding": "latin-1",
            "sep": ",",
        },
        "columns": {
            "deaths": {
                "area_id": "COD_PROVCOM",
                "area_name": "NOME_COMUNE",
                "province_name": "NOME_PROVINCIA",
                "region_name": "NOME_REGIONE",
                "calendar_code": "GE",
                "age_code": "CL_ETA",
            },
            "population": {
                "area_id": "Codice comune",
                "area_name": "Denominazione",
                "age_code": "Eta",
                "male": "Totale Maschi",
                "female": "Totale Femmine",
            },
            "valid_areas": {"area_id": "COD_PROVCOM"},
            "reference_areas": {
                "area_id": "PRO_COM",
                "area_name": "COMUNE",
            },
        },
        "years": {"current": 2020, "baseline": [2015, 2016, 2017, 2018, 2019]},
        "population": {"total_age_code": 999},
        "smoothing": {"window": 7},
        "critical_days": {"threshold": 1.5},
        "aggregation": {"area_level": "area"},
    }

def _resolve(ROOT_DIR, p):
    """
    Resolve path p relative to ROOT_DIR if not absolute.
    """
    return os.path.abspath(os.path.join(ROOT_DIR, p))

def _deep_merge(dst, src):
    """
    Recursively merge src into dst
    """
    for k, v in src.items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v

def _load_config(ROOT_DIR: str, path: str):
    """
    Load YAML config if present; otherwise use defaults for both config and paths.
    Returns (cfg, PATHS)
    """
    cfg = return_default_config()
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as fh:
            user = yaml.safe_load(fh) or {}
        _deep_merge(cfg, user)
    else:
        print(f"[config] No config file at {path}; using built-in defaults.")

    PATHS = {k: _resolve(ROOT_DIR, v) for k, v in cfg["paths"].items() if v}
    return cfg, PATHS

# ----------------------------- readers ------------------------------

def _read_table(path: str, cfg: dict, **kwargs) -> pd.DataFrame:
    """
    Read a delimited file as strings, wrapping any failure in LoadError.
    """
    if not os.path.exists(path):
        raise LoadError(f"File not found: {path}")
    ld = cfg.get("loader", {})
    try:
        return pd.read_csv(
            path,
            sep=ld.get("sep", ","),
            encoding=ld.get("encoding", "latin-1"),
            dtype=str,
            keep_default_na=False,
            **kwargs,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise LoadError(f"Failed to read {path} as tabular data: {e}") from e

def _canonical(df: pd.DataFrame, mapping: dict, path: str) -> pd.DataFrame:
    """
    Check that every source column in `mapping` (canonical -> source) exists and
    rename the frame to canonical names.
    """
    _require_columns(df, list(mapping.values()), LoadError, where=path)
    return df.rename(columns={v: k for k, v in mapping.items()})

def _coerce_count(s: pd.Series, sentinel: str, path: str, column: str,
                  row_offset: int = 0) -> pd.Series:
    """
    Parse a column of counts into nullable Int64. The sentinel and blank cells
    become <NA>; anything else that is not an integer raises LoadError with the
    offending row number (1-based, header excluded) and column. `row_offset`
    counts lines skipped above the header, e.g. a title line.
    """
    raw = s.astype(str).str.strip()
    missing = raw.eq(sentinel) | raw.eq("")
    num = pd.to_numeric(raw.where(~missing), errors="coerce")
    bad = num.isna() & ~missing
    if not bad.any():
        bad = num.notna() & (num != np.floor(num))
    if bad.any():
        i = bad.idxmax()
        raise LoadError(
            f"{path}: row {int(i) + 1 + row_offset}, column '{column}': cannot parse {s.loc[i]!r} as a count"
        )
    return num.astype("Int64")

def _coerce_code(s: pd.Series, path: str, column: str, row_offset: int = 0) -> pd.Series:
    """
    Parse an integer identifier column (area codes, age codes, calendar codes).
    """
    num = pd.to_numeric(s.astype(str).str.strip(), errors="coerce")
    bad = num.isna() | (num != np.floor(num))
    if bad.any():
        i = bad.idxmax()
        raise LoadError(
            f"{path}: row {int(i) + 1 + row_offset}, column '{column}': cannot parse {s.loc[i]!r} as an integer code"
        )
    return num.astype("int64")

def load_deaths(path: str, cfg: dict) -> pd.DataFrame:
    """
    Load the daily deaths table (one row per area, calendar day and age class,
    one column per year x gender).

    Returns identifiers under canonical names (area_id, area_name, province_name,
    region_name, calendar_code, age_code) plus the measure columns as Int64,
    with the "no data" sentinel converted to <NA>.
    """
    df = _read_table(path, cfg)
    df = _canonical(df, cfg["columns"]["deaths"], path)
    measures = [c for c, _, _ in MEASURE_COLUMNS]
    _require_columns(df, measures, LoadError, where=path)

    sentinel = cfg.get("loader", {}).get("missing_sentinel", "n.d.")
    out = df[list(cfg["columns"]["deaths"].keys()) + measures].copy()
    for c in ("area_id", "calendar_code", "age_code"):
        out[c] = _coerce_code(out[c], path, c)
    for c in ("area_name", "province_name", "region_name"):
        out[c] = out[c].str.strip()
    for c in measures:
        out[c] = _coerce_count(out[c], sentinel, path, c)

    n_missing = int(sum(out[c].isna().sum() for c in measures))
    print(f"[loader] {os.path.basename(path)}: {len(out)} rows, "
          f"{out['area_id'].nunique()} areas, {n_missing} cells without data.")
    return out

def load_population(path: str, cfg: dict) -> pd.DataFrame:
    """
    Load the resident population register. Age code 999 denotes the all-ages
    total; male/female counts are nullable integers.
    """
    mapping = cfg["columns"]["population"]
    skip = 0
    if os.path.exists(path):
        # ISTAT register exports start with a title line; skip it when present.
        with open(path, "r", encoding=cfg.get("loader", {}).get("encoding", "latin-1")) as fh:
            if mapping["area_id"] not in fh.readline():
                skip = 1
    df = _canonical(_read_table(path, cfg, skiprows=skip), mapping, path)

    sentinel = cfg.get("loader", {}).get("missing_sentinel", "n.d.")
    out = df[list(mapping.keys())].copy()
    out["area_id"] = _coerce_code(out["area_id"], path, "area_id", row_offset=skip)
    out["age_code"] = _coerce_code(out["age_code"], path, "age_code", row_offset=skip)
    out["area_name"] = out["area_name"].str.strip()
    for c in ("male", "female"):
        out[c] = _coerce_count(out[c], sentinel, path, c, row_offset=skip)
    print(f"[loader] {os.path.basename(path)}: population for {out['area_id'].nunique()} areas.")
    return out

def load_valid_areas(path: str, cfg: dict) -> set:
    """
    Load the list of areas whose reporting has been validated.
    """
    df = _read_table(path, cfg)
    col = cfg["columns"]["valid_areas"]["area_id"]
    _require_columns(df, [col], LoadError, where=path)
    codes = _coerce_code(df[col], path, col)
    print(f"[loader] {os.path.basename(path)}: {codes.nunique()} validated areas.")
    return set(codes.tolist())

def load_reference_areas(path: str, cfg: dict) -> pd.DataFrame:
    """
    Load the reference list of all municipalities, either from a CSV or from the
    attribute table of an ESRI shapefile (geometry is dropped).
    """
    mapping = cfg["columns"]["reference_areas"]
    if path.lower().endswith(".shp"):
        if not os.path.exists(path):
            raise LoadError(f"File not found: {path}")
        try:
            g = gpd.read_file(path)
        except Exception as e:
            raise LoadError(f"Failed to read shapefile {path}: {e}") from e
        df = pd.DataFrame(g.drop(columns="geometry", errors="ignore")).astype(str)
    else:
        df = _read_table(path, cfg)
    df = _canonical(df, mapping, path)
    out = df[list(mapping.keys())].copy()
    out["area_id"] = _coerce_code(out["area_id"], path, "area_id")
    return out.drop_duplicates("area_id").reset_index(drop=True)

def filter_valid_areas(deaths: pd.DataFrame, valid_areas) -> pd.DataFrame:
    """
    Restrict the deaths table to areas in the authoritative list.
    """
    keep = deaths["area_id"].isin(set(valid_areas))
    dropped = deaths.loc[~keep, "area_id"].nunique()
    if dropped:
        print(f"[loader] Dropping {dropped} area(s) without validated data.")
    return deaths.loc[keep].reset_index(drop=True)

def load_all_data(paths: dict, cfg: dict) -> dict:
    """
    Loads all input files. The reference list is optional.
    """
    for key in ("deaths_csv", "population_csv", "valid_areas_csv"):
        if key not in paths:
            raise LoadError(f"No path configured for '{key}'")
    valid = load_valid_areas(paths["valid_areas_csv"], cfg)
    deaths = filter_valid_areas(load_deaths(paths["deaths_csv"], cfg), valid)
    population = load_population(paths["population_csv"], cfg)

    reference = None
    ref_path = paths.get("reference_areas")
    if ref_path and os.path.exists(ref_path):
        reference = load_reference_areas(ref_path, cfg)
    else:
        print(f"[loader] No reference area list found (expected at {ref_path}); coverage will use validated areas only.")
    return {"deaths": deaths, "population": population,
            "valid_areas": valid, "reference": reference}

# tests/test_normalizer.py
import pytest
import numpy as np
import pandas as pd
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from normalizer import (
    unpivot_measures,
    decode_calendar_code,
    compute_day_index,
    drop_invalid_leap_days,
    truncate_to_reported,
    attach_age_classes,
    normalize,
    RECORD_COLUMNS,
)
from helpers import MEASURE_COLUMNS, MACRO_AGE_ORDER, AGE_ORDER, NormalizationError

MEASURES = [c for c, _, _ in MEASURE_COLUMNS]


def _wide(rows):
    """
    Loader-shaped frame. Each row: (area_id, calendar_code, age_code, {measure: count}).
    Measures not given default to 0.
    """
    recs = []
    for area, code, age, counts in rows:
        r = {
            'area_id': area, 'area_name': f"C{area}", 'province_name': "P",
            'region_name': "R", 'calendar_code': code, 'age_code': age,
        }
        for m in MEASURES:
            r[m] = counts.get(m, 0)
        recs.append(r)
    df = pd.DataFrame(recs)
    for m in MEASURES:
        df[m] = df[m].astype("Int64")
    return df


# ============================================================================
# Test unpivot_measures
# ============================================================================
class TestUnpivot:
    """Test wide-to-long reshape."""

    def test_one_row_per_year_gender(self):
        wide = _wide([(1, 101, 0, {'M_20': 3, 'F_15': 2})])
        long = unpivot_measures(wide)
        assert len(long) == 12
        assert set(zip(long['year'], long['gender'])) == {
            (y, g) for y in range(2015, 2021) for g in ('male', 'female')}
        row = long[(long['year'] == 2020) & (long['gender'] == 'male')]
        assert row['death_count'].iloc[0] == 3
        row = long[(long['year'] == 2015) & (long['gender'] == 'female')]
        assert row['death_count'].iloc[0] == 2

    def test_keeps_identifiers(self):
        wide = _wide([(7, 215, 3, {})])
        long = unpivot_measures(wide)
        assert (long['area_id'] == 7).all()
        assert (long['calendar_code'] == 215).all()
        assert 'M_20' not in long.columns

    def test_total_columns_are_dropped(self):
        wide = _wide([(1, 101, 0, {})])
        wide['T_20'] = 5
        long = unpivot_measures(wide)
        assert 'T_20' not in long.columns
        assert len(long) == 12

    def test_missing_measure_column(self):
        wide = _wide([(1, 101, 0, {})]).drop(columns='F_18')
        with pytest.raises(NormalizationError):
            unpivot_measures(wide)

    def test_missing_stays_missing(self):
        wide = _wide([(1, 101, 0, {})])
        wide['M_20'] = pd.array([pd.NA], dtype="Int64")
        long = unpivot_measures(wide)
        v = long[(long['year'] == 2020) & (long['gender'] == 'male')]['death_count']
        assert v.isna().all()


# ============================================================================
# Test decode_calendar_code
# ============================================================================
class TestDecodeCalendarCode:
    """Test MDD code decoding."""

    def test_valid_codes(self):
        out = decode_calendar_code(pd.Series([101, 229, 315, 430, 1231]))
        assert out['month'].tolist() == [1, 2, 3, 4, 12]
        assert out['day_of_month'].tolist() == [1, 29, 15, 30, 31]

    @pytest.mark.parametrize("code", [100, 132, 230, 431, 1301, 5, -101])
    def test_invalid_codes(self, code):
        with pytest.raises(NormalizationError, match="calendar code"):
            decode_calendar_code(pd.Series([101, code]))


# ============================================================================
# Test compute_day_index
# ============================================================================
class TestComputeDayIndex:
    """Test leap-aware day index."""

    @pytest.mark.parametrize("month,day,expected", [
        (1, 1, 1), (1, 31, 31), (2, 1, 32), (2, 28, 59),
        (3, 1, 60), (3, 15, 74), (4, 1, 91), (4, 30, 120),
    ])
    def test_non_leap(self, month, day, expected):
        assert compute_day_index([2019], [month], [day])[0] == expected

    @pytest.mark.parametrize("month,day,expected", [
        (1, 1, 0), (1, 31, 30), (2, 1, 31), (2, 29, 59),
        (3, 1, 60), (3, 15, 74), (4, 1, 91), (4, 30, 120),
    ])
    def test_leap(self, month, day, expected):
        assert compute_day_index([2020], [month], [day])[0] == expected

    def test_15_march_comparable_across_years(self):
        years = list(range(2015, 2021))
        idx = compute_day_index(years, [3] * 6, [15] * 6)
        assert len(set(idx.tolist())) == 1

    def test_deterministic(self):
        y = np.array([2015, 2016, 2020, 2019])
        m = np.array([1, 2, 3, 4])
        d = np.array([5, 29, 1, 30])
        np.testing.assert_array_equal(compute_day_index(y, m, d), compute_day_index(y, m, d))

    def test_later_months_follow_same_rule(self):
        assert compute_day_index([2019], [12], [31])[0] == 365
        assert compute_day_index([2020], [12], [31])[0] == 365


# ============================================================================
# Test leap-day filtering and truncation
# ============================================================================
class TestLeapDays:
    """29 February exists only in 2016 and 2020."""

    def test_drop_invalid_leap_days(self):
        df = pd.DataFrame({
            'year': [2015, 2016, 2019, 2020, 2019],
            'month': [2, 2, 2, 2, 3],
            'day_of_month': [29, 29, 29, 29, 1],
        })
        out = drop_invalid_leap_days(df)
        assert out['year'].tolist() == [2016, 2020, 2019]

    def test_normalize_keeps_29_feb_only_for_leap_years(self):
        wide = _wide([(1, 229, 0, {m: 1 for m in MEASURES}), (1, 301, 0, {'M_20': 1})])
        out = normalize(wide)
        feb29 = out[(out['month'] == 2) & (out['day_of_month'] == 29)]
        assert sorted(feb29['year'].unique().tolist()) == [2016, 2020]


class TestTruncate:
    """Test truncation to the last reported current-year day."""

    def test_truncates_all_years(self):
        df = pd.DataFrame({
            'year': [2019, 2019, 2020, 2020, 2020],
            'day_index': [10, 20, 10, 15, 20],
            'death_count': pd.array([1, 1, 2, 3, 0], dtype="Int64"),
        })
        out = truncate_to_reported(df, 2020)
        assert out['day_index'].max() == 15
        assert len(out) == 3

    def test_missing_counts_do_not_extend_window(self):
        df = pd.DataFrame({
            'year': [2020, 2020],
            'day_index': [5, 30],
            'death_count': pd.array([1, pd.NA], dtype="Int64"),
        })
        assert truncate_to_reported(df, 2020)['day_index'].tolist() == [5]

    def test_no_current_year_data(self):
        df = pd.DataFrame({'year': [2019], 'day_index': [3],
                           'death_count': pd.array([1], dtype="Int64")})
        with pytest.warns(UserWarning, match="No reported deaths for 2020"):
            out = truncate_to_reported(df, 2020)
        assert len(out) == 1


class TestAttachAgeClasses:
    """Test age-class lookup."""

    def test_attach(self):
        df = pd.DataFrame({'age_code': [0, 9, 10, 21]})
        out = attach_age_classes(df)
        assert out['age_class'].tolist() == ["0", "41-45", "46-50", "100+"]
        assert out['macro_age_class'].tolist() == ["0-45", "0-45", "46-50", "91+"]
        assert 'age_class' not in df.columns

    def test_classes_are_ordered_by_age(self):
        out = attach_age_classes(pd.DataFrame({'age_code': [21, 0, 12]}))
        assert out['macro_age_class'].cat.ordered
        assert list(out['macro_age_class'].cat.categories) == MACRO_AGE_ORDER
        assert list(out['age_class'].cat.categories) == AGE_ORDER
        assert out.sort_values('macro_age_class')['age_code'].tolist() == [0, 12, 21]

    def test_unknown_code(self):
        with pytest.raises(NormalizationError, match="22"):
            attach_age_classes(pd.DataFrame({'age_code': [1, 22]}))


# ============================================================================
# Test normalize
# ============================================================================
class TestNormalize:
    """Full normalization stage."""

    def test_output_schema(self):
        wide = _wide([(1, 101, 0, {'M_20': 1}), (2, 315, 19, {'F_20': 2})])
        out = normalize(wide)
        assert list(out.columns) == RECORD_COLUMNS
        assert str(out['death_count'].dtype) == 'Int64'

    def test_leap_january_first_is_sentinel_zero(self):
        wide = _wide([(1, 101, 0, {'M_20': 1, 'M_19': 1}), (1, 102, 0, {'M_20': 1})])
        out = normalize(wide)
        jan1 = out[(out['month'] == 1) & (out['day_of_month'] == 1)]
        assert jan1.loc[jan1['year'] == 2020, 'day_index'].unique().tolist() == [0]
        assert jan1.loc[jan1['year'] == 2019, 'day_index'].unique().tolist() == [1]

    def test_truncation_applies_to_baseline_years(self):
        # 2020 last reported on 2 Jan (day_index 1); 2019 also has 10 Jan
        wide = _wide([(1, 102, 0, {'M_20': 1}), (1, 110, 0, {'M_19': 4})])
        out = normalize(wide)
        assert out['day_index'].max() == 1
        assert (out['day_of_month'] == 10).sum() == 0

    def test_negative_count(self):
        wide = _wide([(1, 101, 0, {'M_17': -1, 'M_20': 1})])
        with pytest.raises(NormalizationError, match="Negative"):
            normalize(wide)

    def test_bad_calendar_code(self):
        wide = _wide([(1, 230, 0, {'M_20': 1})])
        with pytest.raises(NormalizationError):
            normalize(wide)

    def test_does_not_mutate_input(self):
        wide = _wide([(1, 101, 0, {'M_20': 1})])
        before = wide.copy()
        normalize(wide)
        pd.testing.assert_frame_equal(wide, before)

    def test_custom_current_year(self):
        wide = _wide([(1, 105, 0, {'M_19': 1}), (1, 120, 0, {'M_20': 1, 'M_19': 1})])
        out = normalize(wide, {'years': {'current': 2019}})
        assert out['day_index'].max() == 20

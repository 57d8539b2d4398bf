import datetime as dt

import pytest

from config_utils import Thresholds
from metrics import (
    CRITICAL,
    GOOD,
    INCOMPLETE,
    MODERATE,
    POOR,
    RawSample,
    classify_rainfall,
    classify_water_quality,
    derive_reading,
    derive_water_level,
)

T = Thresholds()


def test_water_level_is_mount_height_minus_distance():
    assert derive_water_level(300, 50) == 250


def test_water_level_clamps_at_zero():
    assert derive_water_level(300, 350) == 0


@pytest.mark.parametrize("height", [None, "abc", float("nan")])
def test_water_level_null_without_usable_height(height):
    assert derive_water_level(height, 50) is None


def test_water_level_null_without_distance():
    assert derive_water_level(300, None) is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        (0, "none"),
        (50, "none"),
        (51, "light"),
        (1000, "light"),
        (2500, "moderate"),
        (2501, "heavy"),
        (None, None),
    ],
)
def test_rainfall_buckets(raw, expected):
    assert classify_rainfall(raw, T.rainfall) == expected


@pytest.mark.parametrize("turbidity", [0, 50, 200, 1000])
def test_ph_below_critical_low_is_critical_regardless_of_turbidity(turbidity):
    assert classify_water_quality(5.0, turbidity, T) == CRITICAL


@pytest.mark.parametrize(
    "ph,turbidity,expected",
    [
        (7.0, 10, GOOD),
        (7.0, 50, MODERATE),
        (6.0, 10, POOR),
        (7.0, 200, POOR),
        (7.0, 301, CRITICAL),
        (9.8, 10, CRITICAL),
    ],
)
def test_water_quality_reduction(ph, turbidity, expected):
    assert classify_water_quality(ph, turbidity, T) == expected


@pytest.mark.parametrize("ph,turbidity", [(None, 10), (7.0, None), ("x", 10)])
def test_water_quality_incomplete(ph, turbidity):
    assert classify_water_quality(ph, turbidity, T) == INCOMPLETE


def test_derive_reading_is_reproducible():
    sample = RawSample(
        device_id="RIVER-01",
        timestamp=dt.datetime(2026, 3, 1, 10, 0),
        raw_distance_cm=57.3,
        ph_value=7.1,
        turbidity_ntu=30.0,
        rainfall_value_raw=1200,
    )
    first = derive_reading(sample, 300, T)
    second = derive_reading(sample, 300, T)

    assert first == second
    assert first.reading.water_level_cm == 300 - 57.3
    assert first.rainfall_category == "moderate"
    assert first.water_quality == MODERATE

from datetime import date

import pytest

from practicehub.services.errors import SchedulingComputationError, SchedulingConfigurationError
from practicehub.services.frequency import add_months, advance, normalize_frequency


@pytest.mark.parametrize(
    "start, frequency, expected",
    [
        (date(2024, 1, 1), "monthly", date(2024, 2, 1)),
        (date(2024, 1, 31), "monthly", date(2024, 2, 29)),
        (date(2023, 1, 31), "monthly", date(2023, 2, 28)),
        (date(2024, 11, 30), "quarterly", date(2025, 2, 28)),
        (date(2024, 2, 29), "annually", date(2025, 2, 28)),
        (date(2024, 12, 31), "daily", date(2025, 1, 1)),
        (date(2024, 3, 4), "weekly", date(2024, 3, 11)),
        (date(2024, 3, 4), "fortnightly", date(2024, 3, 18)),
    ],
)
def test_advance(start, frequency, expected):
    assert advance(start, frequency) == expected


def test_aliases_and_case():
    assert normalize_frequency(" Yearly ") == "annually"
    assert normalize_frequency("annual") == "annually"
    assert normalize_frequency("MONTHLY") == "monthly"


def test_unknown_frequency():
    with pytest.raises(SchedulingConfigurationError) as exc:
        normalize_frequency("every other tuesday")

    assert exc.value.error_type == "invalid_frequency"


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_missing_frequency(raw):
    with pytest.raises(SchedulingConfigurationError) as exc:
        normalize_frequency(raw)

    assert exc.value.error_type == "missing_frequency"


def test_add_months_across_years():
    assert add_months(date(2024, 10, 15), 14) == date(2025, 12, 15)


def test_overflow_is_a_computation_error():
    with pytest.raises(SchedulingComputationError) as exc:
        advance(date(9999, 12, 31), "daily")

    assert exc.value.error_type == "date_computation_failed"

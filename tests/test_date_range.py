import random
from datetime import date

import pytest

from autocommit import DateRangeExpander, InvalidDateFormat, InvalidRange, parse_date


def test_one_plan_per_day_in_ascending_order(rng):
    plans = DateRangeExpander(2, 4, rng).expand(date(2024, 2, 27), date(2024, 3, 2))

    assert [p.date for p in plans] == [
        date(2024, 2, 27),
        date(2024, 2, 28),
        date(2024, 2, 29),
        date(2024, 3, 1),
        date(2024, 3, 2),
    ]


def test_counts_stay_within_half_open_bounds():
    for seed in range(50):
        expander = DateRangeExpander(3, 7, random.Random(seed))
        plans = expander.expand(date(2024, 1, 1), date(2024, 1, 31))
        assert all(3 <= p.commit_count < 7 for p in plans)


def test_upper_bound_is_never_drawn():
    expander = DateRangeExpander(0, 2, random.Random(0))
    counts = {p.commit_count for p in expander.expand(date(2023, 1, 1), date(2023, 12, 31))}
    assert counts == {0, 1}


def test_single_day_range_gives_one_plan(rng):
    plans = DateRangeExpander(1, 5, rng).expand(date(2024, 6, 1), date(2024, 6, 1))
    assert len(plans) == 1
    assert plans[0].date == date(2024, 6, 1)


def test_equal_bounds_mean_exact_count(rng):
    plans = DateRangeExpander(5, 5, rng).expand(date(2024, 6, 1), date(2024, 6, 3))
    assert [p.commit_count for p in plans] == [5, 5, 5]


def test_min_above_max_is_rejected(rng):
    with pytest.raises(InvalidRange):
        DateRangeExpander(5, 4, rng)


def test_reversed_dates_are_rejected(rng):
    with pytest.raises(InvalidRange):
        DateRangeExpander(1, 3, rng).expand(date(2024, 6, 2), date(2024, 6, 1))


@pytest.mark.parametrize("text", ["2024-03-05", "2024/03/05", "03/05/2024"])
def test_parse_date_formats(text):
    assert parse_date(text) == date(2024, 3, 5)


@pytest.mark.parametrize("text", ["yesterday", "2024-13-01", "2024-02-30", ""])
def test_parse_date_rejects_garbage(text):
    with pytest.raises(InvalidDateFormat):
        parse_date(text)

from datetime import date
import os
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[2]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from backend.app.norma.merchant import (  # noqa: E402
    extract_merchant_name,
    has_subscription_keyword,
    merchant_key,
)
from backend.app.norma.patterns import (  # noqa: E402
    classify_frequency,
    coefficient_of_variation,
    intervals_in_days,
    months_before,
    normalize_description,
    typical_day,
)


def test_normalize_strips_dates_references_and_numbers():
    assert normalize_description("NETFLIX.COM 12/03 REF 99812") == "NETFLIX.COM"
    assert normalize_description("netflix.com 14/04 REF 10022") == "NETFLIX.COM"
    assert normalize_description("TESCO STORES 2231") == "TESCO STORES"
    assert normalize_description("AMAZON*MKTPLACE   TXN55512") == "AMAZON MKTPLACE"


def test_normalize_keeps_refund_wording():
    assert normalize_description("REFUND FROM SHOP") == "REFUND FROM SHOP"


def test_normalize_handles_empty_input():
    assert normalize_description(None) == ""
    assert normalize_description("   ") == ""


def test_coefficient_of_variation():
    assert coefficient_of_variation([10.0, 10.0, 10.0]) == 0.0
    assert coefficient_of_variation([5.0]) == 0.0
    assert coefficient_of_variation([0.0, 0.0]) == 0.0
    assert coefficient_of_variation([10, 50, 100]) > 10
    assert coefficient_of_variation([9.99, 10.49]) == pytest.approx(2.4414, rel=1e-3)


@pytest.mark.parametrize(
    "avg,expected",
    [
        (7, "weekly"),
        (4, "weekly"),
        (14, "fortnightly"),
        (30.4, "monthly"),
        (25, "monthly"),
        (91, "quarterly"),
        (365, "yearly"),
        (20, None),
        (60, None),
        (400, None),
    ],
)
def test_classify_frequency(avg, expected):
    assert classify_frequency(avg) == expected


def test_intervals_and_typical_day():
    dates = [date(2024, 3, 5), date(2024, 1, 5), date(2024, 2, 6)]
    assert intervals_in_days(dates) == [32, 28]
    assert typical_day(dates) == 5
    assert typical_day([date(2024, 1, 14), date(2024, 2, 15)]) == 15
    assert typical_day([]) is None


def test_months_before_clamps_short_months():
    assert months_before(date(2024, 3, 31), 1) == date(2024, 2, 29)
    assert months_before(date(2024, 1, 15), 12) == date(2023, 1, 15)
    assert months_before(date(2024, 1, 15), 0) == date(2024, 1, 15)


def test_extract_merchant_name():
    assert extract_merchant_name("CARD PAYMENT TO SPOTIFY.COM 01/02") == "Spotify"
    assert extract_merchant_name("DIRECT DEBIT TO BRITISH GAS REF 55512") == "British Gas"
    assert extract_merchant_name("TESCO STORES - LONDON") == "Tesco Stores"
    assert extract_merchant_name("") == ""


def test_merchant_key_and_keywords():
    assert merchant_key("NETFLIX.COM 12/03") == merchant_key("netflix.com 01/04")
    assert has_subscription_keyword("Netflix.com") is True
    assert has_subscription_keyword("Corner Shop") is False

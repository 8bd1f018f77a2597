from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from pricewatch.utils.backoff import jitter, next_backoff, parse_retry_after, rate_limit_wait

def test_next_backoff_caps():
    assert next_backoff(30, 120) == 60
    assert next_backoff(60, 120) == 120
    assert next_backoff(120, 120) == 120

def test_jitter_bounds():
    for _ in range(100):
        assert 8.0 <= jitter(10.0) <= 12.0

def test_parse_retry_after_seconds():
    assert parse_retry_after("120") == 120.0
    assert parse_retry_after(" 7 ") == 7.0
    assert parse_retry_after("-3") == 0.0

def test_parse_retry_after_missing_or_garbage():
    assert parse_retry_after(None) is None
    assert parse_retry_after("") is None
    assert parse_retry_after("soon") is None

def test_parse_retry_after_http_date():
    when = datetime.now(timezone.utc) + timedelta(seconds=90)
    v = parse_retry_after(format_datetime(when, usegmt=True))
    assert v == pytest.approx(90, abs=2)

def test_rate_limit_wait_prefers_larger_and_caps():
    assert rate_limit_wait(None, 30, 300) == 30
    assert rate_limit_wait(120, 30, 300) == 120
    assert rate_limit_wait(5, 30, 300) == 30
    assert rate_limit_wait(900, 30, 300) == 300

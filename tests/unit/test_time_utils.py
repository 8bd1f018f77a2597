from datetime import datetime, timezone

from pricewatch.utils.time import ceil_to_second, dt_to_ms, ms_to_dt, utc_now_ms, utc_now_s

def test_ceil_second():
    assert ceil_to_second(10.0) == 10
    assert ceil_to_second(10.1) == 11
    assert ceil_to_second(15.999) == 16

def test_now_ms_matches_now_s():
    assert abs(utc_now_ms() / 1000.0 - utc_now_s()) < 1.0

def test_ms_dt_roundtrip_and_naive_is_utc():
    dt = ms_to_dt(1_700_000_000_123)
    assert dt.tzinfo is timezone.utc
    assert dt_to_ms(dt) == 1_700_000_000_123
    naive = datetime(2024, 1, 1, 0, 0, 0)
    assert dt_to_ms(naive) == dt_to_ms(naive.replace(tzinfo=timezone.utc))

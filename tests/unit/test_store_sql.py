import pytest

from pricewatch.alerts.rules import Operator
from pricewatch.alerts.store_sql import AlertRow, SqlAlertStore
from pricewatch.errors import StoreError

@pytest.fixture
def store(tmp_path):
    s = SqlAlertStore(f"sqlite:///{tmp_path / 'alerts.db'}", create_schema=True)
    yield s
    s.close()

@pytest.mark.asyncio
async def test_list_active_reads_table(store):
    a = await store.add(AlertRow(coin_id="bitcoin", vs_currency="usd", type=">", value=50000.0))
    b = await store.add(AlertRow(coin_id="ethereum", vs_currency="usd", type="<", value=2000.0,
                                 cooldown_sec=60))
    await store.add(AlertRow(coin_id="solana", vs_currency="usd", type=">", value=1.0, active=False))
    await store.add(AlertRow(coin_id="solana", vs_currency="usd", type="percent_change", value=5.0))

    got = await store.list_active()
    assert [x.id for x in got] == [a, b]
    assert got[0].operator is Operator.ABOVE and got[0].cooldown_s == 300
    assert got[1].operator is Operator.BELOW and got[1].cooldown_s == 60
    assert got[0].last_triggered_at is None

@pytest.mark.asyncio
async def test_mark_triggered_is_visible_next_read(store):
    a = await store.add(AlertRow(coin_id="bitcoin", vs_currency="usd", type=">", value=50000.0))
    await store.mark_triggered(a, 1_704_067_200_000)
    got = await store.list_active()
    assert got[0].last_triggered_at == 1_704_067_200_000

@pytest.mark.asyncio
async def test_mark_unknown_alert_raises(store):
    with pytest.raises(StoreError):
        await store.mark_triggered(404, 1)

@pytest.mark.asyncio
async def test_missing_table_is_store_error(tmp_path):
    s = SqlAlertStore(f"sqlite:///{tmp_path / 'empty.db'}")
    try:
        with pytest.raises(StoreError):
            await s.list_active()
    finally:
        s.close()

"""Tests for the reconciliation pass: merge, deltas, policies, admin payloads."""

from unittest.mock import MagicMock, patch

import pytest

from conftest import pricing_session
from inventory_sync import reconcile
from inventory_sync.pricing import NETWORK_ERROR, PriceQuote
from inventory_sync.reconcile import (
    merge_admin_payload,
    owned_policy,
    select_all,
    stale_owned_policy,
)
from inventory_sync.schema import InventoryItem
from inventory_sync.store import StoreLockedError, StoreWriteError, read_inventory, store_lock, write_inventory


@pytest.fixture
def inv_path(tmp_path):
    return tmp_path / "inventory.json"


def _items(path):
    return {i.external_id or i.name: i for i in read_inventory(path).items}


class TestMerge:
    def test_identity_preserving_merge(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "111", "quantity": 5, "name": "Booster Box"}])
        engine = make_engine(pricing_session({"111": 100.00}))

        report = engine.sync(inv_path, owned_policy())

        item = _items(inv_path)["111"]
        assert item.quantity == 5
        assert item.name == "Booster Box"
        assert item.market_price == 100.00
        assert item.your_price == 90.00
        assert item.baseline_price == 100.00
        assert item.baseline_at == item.last_updated == "2026-01-01T12:00:00.000Z"
        assert item.price_error is None
        assert item.image_url.endswith("/111.jpg")
        assert report.updated == 1 and report.errored == 0

    def test_pricing_percent_override(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 1, "name": "A", "pricingPercent": 110}])
        make_engine(pricing_session({"1": 50.0})).sync(inv_path, owned_policy())
        assert _items(inv_path)["1"].your_price == 55.0

    def test_deltas_since_last_and_baseline(self, inv_path, make_engine, wall_clock):
        write_inventory(inv_path, [{"externalId": "111", "quantity": 5, "name": "Booster Box"}])
        prices = {"111": 100.00}
        engine = make_engine(pricing_session(prices))

        engine.sync(inv_path, owned_policy())
        first_seen = _items(inv_path)["111"].baseline_at

        wall_clock.advance(days=1)
        prices["111"] = 110.00
        second = engine.sync(inv_path, owned_policy()).price_changes[0]
        assert second.since_baseline.delta == pytest.approx(10.00)
        assert second.since_baseline.pct == pytest.approx(10.00)

        wall_clock.advance(days=1)
        prices["111"] = 108.00
        third = engine.sync(inv_path, owned_policy()).price_changes[0]
        assert third.since_last.delta == pytest.approx(-2.00)
        assert round(third.since_last.pct, 2) == -1.82

        item = _items(inv_path)["111"]
        assert item.baseline_price == 100.00
        assert item.baseline_at == first_seen
        assert item.market_price == 108.00

    def test_failed_price_keeps_existing_fields(self, inv_path, make_engine):
        write_inventory(
            inv_path,
            [{"externalId": "9", "quantity": 2, "name": "Tin", "marketPrice": 40, "yourPrice": 36,
              "lastUpdated": "2025-01-01T00:00:00Z"}],
        )
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=200, json=lambda: [])
        report = make_engine(session).sync(inv_path, owned_policy())

        item = _items(inv_path)["9"]
        assert item.market_price == 40.0
        assert item.your_price == 36.0
        assert item.last_updated == "2025-01-01T00:00:00.000Z"
        assert item.price_error == "NOT_FOUND"
        assert report.errored == 1
        assert report.errors == [("9", "NOT_FOUND")]

    def test_success_clears_price_error(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "9", "quantity": 1, "name": "Tin", "priceError": "NO_VARIANTS"}])
        make_engine(pricing_session({"9": 12.0})).sync(inv_path, owned_policy())
        assert _items(inv_path)["9"].price_error is None

    def test_fills_missing_name_and_set_from_quote(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "5", "quantity": 1}])
        make_engine(pricing_session({"5": 3.0})).sync(inv_path, owned_policy())
        item = _items(inv_path)["5"]
        assert item.name == "Product 5"
        assert item.set_name == "Base Set"

    def test_alert_flag(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 1, "name": "A", "marketPrice": 100}])
        report = make_engine(pricing_session({"1": 125.0}), alert_pct=20).sync(inv_path, owned_policy())
        assert [c.identity for c in report.alerts] == ["id:1"]

    def test_alert_cooldown(self, inv_path, make_engine, wall_clock):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 1, "name": "A", "marketPrice": 100}])
        prices = {"1": 125.0}
        engine = make_engine(pricing_session(prices), alert_pct=20, alert_cooldown_hours=12)

        assert len(engine.sync(inv_path, owned_policy()).alerts) == 1
        assert _items(inv_path)["1"].last_alerted_at == "2026-01-01T12:00:00.000Z"

        wall_clock.advance(hours=1)
        prices["1"] = 160.0
        quiet = engine.sync(inv_path, owned_policy())
        assert quiet.updated == 1
        assert quiet.alerts == []
        assert _items(inv_path)["1"].last_alerted_at == "2026-01-01T12:00:00.000Z"

        wall_clock.advance(hours=12)
        prices["1"] = 200.0
        assert len(engine.sync(inv_path, owned_policy()).alerts) == 1
        assert _items(inv_path)["1"].last_alerted_at == "2026-01-02T01:00:00.000Z"

    def test_no_alert_stamp_when_alerts_disabled(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 1, "name": "A", "marketPrice": 100}])
        make_engine(pricing_session({"1": 300.0})).sync(inv_path, owned_policy())
        assert _items(inv_path)["1"].last_alerted_at is None


class TestSelection:
    def test_stale_policy_skips_recent_and_unowned(self, inv_path, make_engine, wall_clock):
        write_inventory(
            inv_path,
            [
                {"externalId": "fresh", "quantity": 1, "lastUpdated": "2026-01-01T06:00:00Z"},
                {"externalId": "stale", "quantity": 1, "lastUpdated": "2025-12-30T06:00:00Z"},
                {"externalId": "never", "quantity": 1},
                {"externalId": "sold", "quantity": 0},
                {"name": "No Id Tin", "quantity": 4},
            ],
        )
        session = pricing_session({"fresh": 1.0, "stale": 2.0, "never": 3.0, "sold": 4.0})
        report = make_engine(session).sync(inv_path, stale_owned_policy(24, now=wall_clock))

        requested = [lk["tcgplayerId"] for lk in session.post.call_args.kwargs["json"]]
        assert sorted(requested) == ["never", "stale"]
        assert report.processed == 2
        assert report.updated == 2
        assert report.skipped == 3
        assert report.total_items == 5

    def test_default_policy_is_stale_owned(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 0}])
        session = pricing_session({"1": 1.0})
        report = make_engine(session).sync(inv_path)
        session.post.assert_not_called()
        assert report.skipped == 1

    def test_select_all_includes_zero_quantity(self):
        assert select_all(InventoryItem(external_id="1", quantity=0))

    def test_nothing_selected_still_persists_once(self, inv_path, make_engine):
        write_inventory(inv_path, [{"name": "Only By Name", "quantity": 1}])
        with patch.object(reconcile, "write_inventory", wraps=reconcile.write_inventory) as spy:
            make_engine(MagicMock()).sync(inv_path, owned_policy())
        assert spy.call_count == 1


class TestPartialBatchFailure:
    def test_middle_chunk_failure(self, inv_path, make_engine):
        ids = [str(n) for n in range(1, 7)]
        write_inventory(
            inv_path,
            [{"externalId": i, "quantity": 1, "name": f"Item {i}", "marketPrice": 1.0} for i in ids],
        )
        session = pricing_session({i: 10.0 + int(i) for i in ids}, fail_ids={"3"})
        engine = make_engine(session, batch_size=2)

        with patch.object(reconcile, "write_inventory", wraps=reconcile.write_inventory) as spy:
            report = engine.sync(inv_path, owned_policy())

        assert session.post.call_count == 3
        assert spy.call_count == 1
        items = _items(inv_path)
        for i in ("1", "2", "5", "6"):
            assert items[i].market_price == 10.0 + int(i)
            assert items[i].price_error is None
        for i in ("3", "4"):
            assert items[i].market_price == 1.0
            assert items[i].price_error == NETWORK_ERROR
        assert (report.processed, report.updated, report.errored) == (6, 4, 2)


class TestAdminPayload:
    EXISTING = [
        InventoryItem(name="Booster Box", external_id="111", quantity=2, market_price=100.0,
                      your_price=90.0, baseline_price=95.0, pricing_percent=80),
        InventoryItem(name="Mystery Tin", quantity=1, market_price=20.0),
        InventoryItem(name="Old Bundle", external_id="222", quantity=3),
    ]

    def test_merge_preserves_engine_fields(self):
        payload = [
            {"externalId": "111", "name": "Booster Box (EN)", "quantity": 6},
            {"name": "mystery tin", "quantity": 0, "pricingPercent": 95},
            {"name": "Brand New ETB", "externalId": "333", "quantity": 4},
            {"quantity": 9},
        ]
        merged, new_items, restocks, dropped = merge_admin_payload(self.EXISTING, payload)

        by_name = {i.name: i for i in merged}
        box = by_name["Booster Box (EN)"]
        assert box.quantity == 6
        assert box.market_price == 100.0
        assert box.baseline_price == 95.0
        assert box.pricing_percent == 80
        assert by_name["mystery tin"].market_price == 20.0
        assert by_name["mystery tin"].pricing_percent == 95
        assert [e.external_id for e in new_items] == ["333"]
        assert dropped == 1
        assert [(e.identity, e.old_quantity, e.new_quantity) for e in restocks] == [("id:111", 2, 6)]
        assert "Old Bundle" not in by_name

    def test_unnamed_new_row_gets_placeholder(self):
        merged, new_items, _, _ = merge_admin_payload([], [{"externalId": "9", "quantity": 1}])
        assert merged[0].name == "Unnamed product"
        assert new_items[0].name == "Unnamed product"

    def test_duplicate_rows_are_dropped(self):
        merged, _, _, dropped = merge_admin_payload([], [{"externalId": "9"}, {"externalId": "9", "name": "again"}])
        assert len(merged) == 1
        assert dropped == 1

    def test_non_list_payload_raises(self):
        with pytest.raises(TypeError):
            merge_admin_payload([], {"items": []})

    def test_sync_reports_restocks_and_new_items(self, inv_path, make_engine):
        write_inventory(inv_path, [i.to_dict() for i in self.EXISTING])
        payload = [
            {"externalId": "111", "quantity": 6},
            {"name": "Mystery Tin", "quantity": 1},
            {"externalId": "222", "quantity": 1},
            {"externalId": "333", "name": "Brand New ETB", "quantity": 4},
        ]
        report = make_engine(MagicMock()).sync(
            inv_path, lambda item: False, incoming=payload
        )

        assert [(e.identity, e.old_quantity, e.new_quantity, e.delta) for e in report.restocks] == [
            ("id:111", 2, 6, 4)
        ]
        assert [e.name for e in report.new_items] == ["Brand New ETB"]
        assert read_inventory(inv_path).items[0].market_price == 100.0
        assert report.total_items == 4

    def test_restock_when_row_adds_external_id(self, inv_path, make_engine):
        write_inventory(inv_path, [{"name": "Booster Box", "quantity": 1}])
        payload = [{"name": "Booster Box", "externalId": "111", "quantity": 5}]
        report = make_engine(MagicMock()).sync(inv_path, lambda item: False, incoming=payload)

        assert [(e.identity, e.name, e.old_quantity, e.new_quantity) for e in report.restocks] == [
            ("id:111", "Booster Box", 1, 5)
        ]
        assert report.new_items == []
        assert _items(inv_path)["111"].quantity == 5

    def test_quantity_drop_is_not_a_restock(self):
        _, _, restocks, _ = merge_admin_payload(self.EXISTING, [{"externalId": "222", "quantity": 1}])
        assert restocks == []

    def test_bad_payload_leaves_store_untouched(self, inv_path, make_engine):
        write_inventory(inv_path, [{"name": "A"}])
        before = inv_path.read_text(encoding="utf-8")
        with pytest.raises(TypeError):
            make_engine(MagicMock()).sync(inv_path, incoming="not a list")
        assert inv_path.read_text(encoding="utf-8") == before


class TestFailures:
    def test_write_failure_propagates(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 1}])
        engine = make_engine(pricing_session({"1": 5.0}))
        with patch.object(reconcile, "write_inventory", side_effect=StoreWriteError("disk full")):
            with pytest.raises(StoreWriteError):
                engine.sync(inv_path, owned_policy())
        assert _items(inv_path)["1"].market_price is None

    def test_lock_blocks_concurrent_sync(self, inv_path, make_engine):
        engine = make_engine(MagicMock())
        with store_lock(inv_path):
            with pytest.raises(StoreLockedError):
                engine.sync(inv_path, owned_policy(), lock=True)

    def test_unknown_identifier_from_fetcher_is_ignored(self, inv_path, make_engine):
        write_inventory(inv_path, [{"externalId": "1", "quantity": 1}])
        engine = make_engine(MagicMock())
        engine.fetcher = MagicMock()
        engine.fetcher.fetch_prices.return_value = {
            "1": PriceQuote(price=2.0),
            "999": PriceQuote(price=3.0),
        }
        report = engine.sync(inv_path, owned_policy())
        assert report.updated == 1
        assert list(_items(inv_path)) == ["1"]

from __future__ import annotations

from datetime import datetime, timezone

from tixr_etl.core.orders import parse_serials, transform_orders


def test_parse_serials_accepts_lists_json_and_literals():
    assert parse_serials(["A1", "B2"]) == ["A1", "B2"]
    assert parse_serials('["A1", "B2"]') == ["A1", "B2"]
    assert parse_serials("A1") == ["A1"]
    assert parse_serials("[A1, B2") == ["[A1, B2"]
    assert parse_serials(None) == []
    assert parse_serials("  ") == []


def test_transform_orders_one_line_per_sale_item_with_item_amounts():
    orders = [{
        "order_id": "O-1",
        "status": "COMPLETE",
        "purchase_date": 1740873600000,
        "ref_type": "BACKSTAGE",
        "referrer": "staff",
        "total": 999,
        "sale_items": [
            {"sale_id": "S-1", "tier_id": 11, "category": "ga", "quantity": 2, "total": "40.00", "net": 36,
             "name": "General Admission", "tickets": [{"serial_number": "X1"}, {"serial_number": "X2"}]},
            {"sale_id": "S-2", "category": "VIP", "quantity": "1", "total": 0, "net": 0, "name": "VIP Comp",
             "tickets": '["V1"]'},
        ],
    }]

    lines = transform_orders(orders, event_id=42)

    assert len(lines) == 2
    ga, vip = lines
    assert ga.key == ("O-1", "S-1")
    assert ga.order_category == "GA"
    assert ga.order_quantity == 2
    assert ga.order_gross == 40.0 and ga.order_net == 36.0
    assert ga.order_serials == ["X1", "X2"]
    assert ga.order_tier_id == "11"
    assert ga.order_ref_type == "BACKSTAGE"
    assert ga.order_purchase_date == datetime(2025, 3, 2, tzinfo=timezone.utc)
    assert vip.order_gross == 0.0
    assert vip.order_serials == ["V1"]


def test_orders_without_items_and_malformed_amounts():
    orders = [
        {"order_id": "O-2", "sale_items": []},
        {"order_id": "O-3", "sale_items": [{"sale_id": "S-9", "total": "n/a", "quantity": None}, "bruit"]},
    ]

    lines = transform_orders(orders, event_id=42)

    assert len(lines) == 1
    assert lines[0].order_gross is None
    assert lines[0].order_quantity is None
    assert lines[0].order_serials == []

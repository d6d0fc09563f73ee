from datetime import date
from decimal import Decimal

import pytest

from jticketing.errors import CatalogMiss, Inactive, Protocol, Upstream


pytestmark = pytest.mark.anyio

DAY = date(2025, 5, 21)


async def test_external_group_filtered_to_configured_tickets(services, upstream):
    group, variants = await services.resolver.resolve(1, DAY)

    assert group.group_name == "Zoo Johor"
    assert [v.ticket_id for v in variants] == [
        "TIC-O-0020", "TIC-O-0021", "TIC-O-0000",
    ]
    adult = variants[0]
    assert adult.unit_price == Decimal("5.00")
    assert (adult.item_desc1, adult.item_desc2, adult.item_desc3) == (
        "Dewasa", "Adult", "成人",
    )
    # the flagship zoo has its own item endpoint
    assert upstream.count("/api/JohorZoo/GetOnlineItem") == 1
    assert upstream.count("/api/JohorZoo/GetOnlineItem2") == 0


async def test_external_group_without_filter_sees_everything(services, upstream):
    _, variants = await services.resolver.resolve(4, DAY)
    assert len(variants) == 4
    assert upstream.count("/api/JohorZoo/GetOnlineItem2") == 1


async def test_bad_and_duplicate_items_are_skipped(services, upstream):
    upstream.items.append({"ItemId": "TIC-O-0020", "UnitPrice": 1.0})
    upstream.items.append({"ItemId": "TIC-X-NEG", "UnitPrice": -2})
    upstream.items.append({"ItemId": "TIC-X-NAN", "UnitPrice": "n/a"})
    upstream.items.append({"UnitPrice": 4})

    _, variants = await services.resolver.resolve(4, DAY)
    by_id = {v.ticket_id: v for v in variants}
    assert set(by_id) == {"TIC-O-0020", "TIC-O-0021", "TIC-O-0000", "TIC-O-0099"}
    assert by_id["TIC-O-0020"].unit_price == Decimal("5.00")


async def test_internal_group_reads_variant_table(services, upstream):
    _, variants = await services.resolver.resolve(2, DAY)
    assert [(v.ticket_id, v.unit_price) for v in variants] == [
        ("BTN-ADULT", Decimal("8.00")),
        ("BTN-SENIOR", Decimal("0.00")),
    ]
    assert variants[0].to_dict()["unitPrice"] == "8.00"
    assert variants[0].to_dict()["itemDesc2"] == "Adult"
    assert upstream.calls == []


async def test_unknown_and_inactive_groups(services):
    with pytest.raises(CatalogMiss):
        await services.resolver.resolve(99, DAY)
    with pytest.raises(Inactive):
        await services.resolver.resolve(3, DAY)


async def test_active_window_is_inclusive(services):
    with pytest.raises(Inactive):
        await services.resolver.resolve(5, DAY)
    _, variants = await services.resolver.resolve(5, date(2019, 12, 31))
    assert [v.ticket_id for v in variants] == ["EXPO"]
    _, variants = await services.resolver.resolve(5, date(2019, 1, 1))
    assert [v.ticket_id for v in variants] == ["EXPO"]


async def test_issuer_outage_is_upstream(services, upstream):
    upstream.items_down = True
    with pytest.raises(Upstream):
        await services.resolver.resolve(1, DAY)


async def test_non_object_item_is_protocol_error(services, upstream):
    upstream.items = upstream.items + ["not-an-object"]
    with pytest.raises(Protocol):
        await services.resolver.resolve(1, DAY)

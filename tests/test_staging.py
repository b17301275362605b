import pytest

from catalog.documents import InMemoryCatalogItemStore
from catalog.pipelines.staging import build_item_document, split_tags, stage_items
from conftest import item_row


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("a|b|c", ["a", "b", "c"]),
        (" a | b ||c ", ["a", "b", "c"]),
        ("", []),
        (None, []),
        ("|", []),
    ],
)
def test_split_tags(raw, expected):
    assert split_tags(raw) == expected


def test_build_item_document_shapes_row():
    row = item_row("SKU-1", tags="outdoor | garden", brand=" Acme ")
    row["color"] = "red"

    doc = build_item_document(row, provider_id="prov-1", version_id="ver-1")

    assert doc["provider_id"] == "prov-1"
    assert doc["catalog_version_id"] == "ver-1"
    assert doc["provider_code"] == "ACME"
    assert doc["sku"] == "SKU-1"
    assert doc["category"] == "tools"
    assert doc["active"] is False
    assert doc["tags"] == ["outdoor", "garden"]
    assert doc["attributes"] == {"tags": "outdoor | garden", "brand": "Acme", "color": "red"}
    assert doc["created_at"] == doc["updated_at"]


@pytest.mark.asyncio
async def test_stage_items_inserts_inactive_documents():
    store = InMemoryCatalogItemStore()

    inserted = await stage_items(
        store,
        [item_row("SKU-1"), item_row("SKU-2")],
        provider_id="prov-1",
        version_id="ver-1",
    )

    assert inserted == 2
    staged = await store.find("prov-1", version_id="ver-1")
    assert {d["sku"] for d in staged} == {"SKU-1", "SKU-2"}
    assert all(d["active"] is False for d in staged)

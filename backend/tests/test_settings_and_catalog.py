"""
Org settings, the model catalog and buyer profiles.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services.errors import RuleViolation
from services.model_catalog import (
    add_images,
    arrange_images,
    find_model,
    is_model_code,
    is_slug,
    sanitize_model_patch,
    slugify_name,
)
from services.profile_service import autofill_buyer_info, empty_profile, merge_address, primary_address
from services.settings_service import DEFAULT_ORG_SETTINGS, merge_settings, public_settings, sanitize_settings_patch
from conftest import auth_headers, mock_collection


# ============================================
# Settings
# ============================================

class TestSettings:
    def test_defaults_when_nothing_stored(self):
        assert merge_settings(None) == DEFAULT_ORG_SETTINGS

    def test_stored_values_override_per_key(self):
        merged = merge_settings({"pricing": {"deposit_percent": 30, "tax_rate_percent": None}})
        assert merged["pricing"]["deposit_percent"] == 30
        assert merged["pricing"]["tax_rate_percent"] == 6.25
        assert merged["factory"] == DEFAULT_ORG_SETTINGS["factory"]
        # defaults are not mutated
        assert DEFAULT_ORG_SETTINGS["pricing"]["deposit_percent"] == 25.0

    def test_sanitize_patch(self):
        clean = sanitize_settings_patch({
            "factory": {"name": "  Plant 2  ", "address": 42},
            "pricing": {
                "delivery_rate_per_mile": "13.25",
                "delivery_minimum": -5,
                "deposit_percent": True,
                "title_fee_default": float("nan"),
                "surprise_fee": 10,
            },
        })
        assert clean == {"factory.name": "Plant 2", "pricing.delivery_rate_per_mile": 13.25}

    def test_public_settings_hides_audit_fields(self):
        settings = merge_settings({"updated_at": "2026-01-01"})
        assert set(public_settings(settings)) == {"factory", "pricing"}


def test_public_settings_route(client):
    with patch("routes.settings.get_org_settings", new_callable=AsyncMock, return_value=merge_settings(None)):
        resp = client.get("/api/settings")
    assert resp.status_code == 200
    assert resp.json()["pricing"]["delivery_minimum"] == 1500.0


def test_settings_update_requires_settings_permission(client):
    headers = auth_headers(user_id="mgr_1", role="manager", email="mgr@example.com")
    assert client.put("/api/admin/settings", json={"pricing": {"deposit_percent": 30}}, headers=headers).status_code == 403


def test_settings_update_without_valid_fields(client, admin_headers):
    with patch("services.settings_service.database.get_db", return_value=MagicMock()):
        resp = client.put("/api/admin/settings", json={"pricing": {"unknown": 1}}, headers=admin_headers)
    assert resp.status_code == 400


# ============================================
# Model catalog
# ============================================

class TestIdentifiers:
    @pytest.mark.parametrize("value,expected", [
        ("APS-90", True), ("aps-630", True), ("APX-150B", True), ("magnolia", False), ("A-1", False), (None, False),
    ])
    def test_model_code(self, value, expected):
        assert is_model_code(value) is expected

    def test_slug(self):
        assert is_slug("the-willow")
        assert not is_slug("The Willow")

    def test_slugify_drops_leading_article(self):
        assert slugify_name("The Magnolia") == "magnolia"
        assert slugify_name("Big Sky  Ranch!") == "big-sky-ranch"
        assert slugify_name(None) == ""


class TestModelPatch:
    def test_name_updates_slug(self):
        assert sanitize_model_patch({"name": " The Juniper "}) == {"name": "The Juniper", "slug": "juniper"}

    @pytest.mark.parametrize("price", [-1, "100", True])
    def test_invalid_price(self, price):
        with pytest.raises(RuleViolation) as exc:
            sanitize_model_patch({"base_price": price})
        assert exc.value.error_code == "INVALID_PRICE"

    def test_specs_are_typed(self):
        updates = sanitize_model_patch({"base_price": 80000, "specs": {"width": "16'", "bedrooms": 3, "bathrooms": "2"}})
        assert updates == {"base_price": 80000.0, "specs.width": "16'", "specs.bedrooms": 3}


def _images():
    return [
        {"public_id": "a", "url": "https://img/a.jpg", "is_primary": True},
        {"public_id": "b", "url": "https://img/b.jpg", "is_primary": False},
    ]


def test_arrange_images_reorders_and_sets_primary():
    result = arrange_images(_images(), set_primary="b", order=["b", "zzz", "a"])
    assert [(i["public_id"], i["is_primary"]) for i in result] == [("b", True), ("a", False)]


def test_arrange_images_ignores_unknown_order():
    assert [i["public_id"] for i in arrange_images(_images(), order=["zzz"])] == ["a", "b"]


@pytest.mark.asyncio
async def test_add_images_rejects_bad_url():
    with pytest.raises(RuleViolation) as exc:
        await add_images("APS-90", [{"url": "ftp://x"}], {"user_id": "admin_1"})
    assert exc.value.error_code == "INVALID_IMAGE_URL"


@pytest.mark.asyncio
async def test_find_model_by_code_and_slug():
    model = {"model_id": "m1", "code": "APS-90", "slug": "magnolia"}
    db = MagicMock()
    db.models = mock_collection(find_one=model)
    with patch("services.model_catalog.database.get_db", return_value=db):
        assert await find_model("aps-90") == model
        assert db.models.find_one.call_args[0][0] == {"code": "APS-90"}
        assert await find_model("magnolia") == model
        assert db.models.find_one.call_args[0][0] == {"slug": "magnolia"}


def test_unknown_model_is_404(client):
    db = MagicMock()
    db.models = mock_collection(find_one=None)
    with patch("services.model_catalog.database.get_db", return_value=db):
        resp = client.get("/api/models/not-a-model")
    assert resp.status_code == 404


def test_model_edit_requires_models_permission(client):
    headers = auth_headers(user_id="staff_1", role="staff", email="staff@example.com")
    assert client.patch("/api/models/APS-90", json={"base_price": 1}, headers=headers).status_code == 403


# ============================================
# Profiles
# ============================================

class TestAddresses:
    def test_first_address_becomes_primary(self):
        addresses = merge_address([], {"address": "1 Main St", "city": "Austin", "state": "TX", "zip": "78701"})
        assert len(addresses) == 1
        assert addresses[0]["is_primary"] is True
        assert addresses[0]["label"] == "Home"
        assert addresses[0]["address_id"].startswith("addr_")

    def test_same_address_is_updated_not_duplicated(self):
        first = merge_address([], {"address": "1 Main St", "city": "Austin"})
        again = merge_address(first, {"address": "1 Main St", "city": "Austin", "label": "Lake lot", "is_primary": True})
        assert len(again) == 1
        assert again[0]["label"] == "Lake lot"
        assert again[0]["address_id"] == first[0]["address_id"]

    def test_explicit_primary_clears_others(self):
        addresses = merge_address([], {"address": "1 Main St"})
        addresses = merge_address(addresses, {"address": "9 Ranch Rd", "is_primary": True})
        assert [a["is_primary"] for a in addresses] == [False, True]
        assert primary_address({"addresses": addresses})["address"] == "9 Ranch Rd"


def test_autofill_prefers_profile_then_token_email():
    profile = empty_profile("user_123")
    profile.update({"first_name": "Ada", "addresses": merge_address([], {"address": "1 Main St", "zip": "78701"})})
    info = autofill_buyer_info(profile, fallback_email="buyer@example.com")
    assert info["first_name"] == "Ada"
    assert info["email"] == "buyer@example.com"
    assert info["address"] == "1 Main St"
    assert info["zip"] == "78701"
    assert info["city"] is None


def test_autofill_route_for_new_user(client, customer_headers):
    db = MagicMock()
    db.user_profiles = mock_collection(find_one=None)
    with patch("services.profile_service.database.get_db", return_value=db):
        resp = client.get("/api/profile/autofill", headers=customer_headers)
    assert resp.status_code == 200
    assert resp.json()["buyer_info"]["email"] == "buyer@example.com"


def test_unknown_primary_address_is_404(client, customer_headers):
    db = MagicMock()
    db.user_profiles = mock_collection(find_one={"user_id": "user_123", "addresses": []})
    with patch("services.profile_service.database.get_db", return_value=db):
        resp = client.post("/api/profile/addresses/addr_missing/primary", headers=customer_headers)
    assert resp.status_code == 404

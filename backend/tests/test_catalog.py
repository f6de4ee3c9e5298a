"""Catalog, guild config and ticket panel tests"""
import pytest

from storefront.core.errors import InvalidAmount, InvalidInput, InvalidPlan, NotFound
from storefront.models.guild_config import GuildConfig
from storefront.services import catalog_service
from storefront.services.config_service import get_config, upsert_config
from storefront.services.views import PRODUCT_SELECT_ID

from conftest import GUILD_ID


@pytest.mark.high
class TestCatalog:
    """Test product management"""

    def test_add_product_stores_minor_units(self, db_session):
        product = catalog_service.add_product(
            db_session, GUILD_ID, "Pack", "desc", "800", {"one_time": "9.99", "annual": "49"}
        )
        assert product.id is not None
        assert product.prices == {"one_time": 999, "annual": 4900}

    def test_add_product_requires_a_plan(self, db_session):
        with pytest.raises(InvalidInput, match="at least one plan amount"):
            catalog_service.add_product(db_session, GUILD_ID, "Pack", "", "800", {"one_time": None})

    def test_add_product_rejects_bad_amount(self, db_session):
        with pytest.raises(InvalidAmount, match="monthly"):
            catalog_service.add_product(db_session, GUILD_ID, "Pack", "", "800", {"monthly": "4.999"})

    def test_set_price_updates_and_disables(self, db_session, product):
        updated = catalog_service.set_price(db_session, GUILD_ID, product.id, "annual", "39.99")
        assert updated.prices["annual"] == 3999

        updated = catalog_service.set_price(db_session, GUILD_ID, str(product.id), "monthly", "off")
        assert "monthly" not in updated.prices
        assert updated.prices["one_time"] == 999

    def test_set_price_validation(self, db_session, product):
        with pytest.raises(InvalidPlan):
            catalog_service.set_price(db_session, GUILD_ID, product.id, "weekly", "1.00")
        with pytest.raises(InvalidAmount, match="Example: 9.99"):
            catalog_service.set_price(db_session, GUILD_ID, product.id, "monthly", "free")
        with pytest.raises(NotFound):
            catalog_service.set_price(db_session, GUILD_ID, 9999, "monthly", "1.00")
        with pytest.raises(InvalidInput, match="Invalid product ID"):
            catalog_service.set_price(db_session, GUILD_ID, "abc", "monthly", "1.00")

    def test_products_are_scoped_to_guild(self, db_session, product):
        with pytest.raises(NotFound):
            catalog_service.get_product(db_session, "222", product.id)

    def test_archive_hides_product(self, db_session, product):
        catalog_service.archive_product(db_session, GUILD_ID, product.id)
        assert catalog_service.list_products(db_session, GUILD_ID) == []
        with pytest.raises(NotFound):
            catalog_service.get_product(db_session, GUILD_ID, product.id)
        archived = catalog_service.get_product(db_session, GUILD_ID, product.id, include_archived=True)
        assert archived.archived_at is not None

    def test_list_newest_first(self, db_session, product):
        newer = catalog_service.add_product(db_session, GUILD_ID, "Newer", "", "801", {"one_time": "1"})
        ids = [p.id for p in catalog_service.list_products(db_session, GUILD_ID)]
        assert ids == [newer.id, product.id]


@pytest.mark.high
class TestGuildConfig:
    """Test config upsert and cache invalidation"""

    def test_missing_config_is_none(self, db_session):
        assert get_config(db_session, GUILD_ID) is None

    def test_upsert_merges_fields(self, db_session):
        upsert_config(db_session, GUILD_ID, support_role_id="r1")
        upsert_config(db_session, GUILD_ID, thanks_channel_id="c1")
        cfg = get_config(db_session, GUILD_ID)
        assert cfg.support_role_id == "r1"
        assert cfg.thanks_channel_id == "c1"
        assert db_session.query(GuildConfig).count() == 1

    def test_upsert_invalidates_cached_none(self, db_session):
        assert get_config(db_session, GUILD_ID) is None
        upsert_config(db_session, GUILD_ID, purchase_log_channel_id="c9")
        assert get_config(db_session, GUILD_ID).purchase_log_channel_id == "c9"

    def test_unknown_field_rejected(self, db_session):
        with pytest.raises(ValueError):
            upsert_config(db_session, GUILD_ID, guild_id="x")


@pytest.mark.high
class TestTicketPanel:
    """Test the purchase panel message"""

    def test_no_channel_configured(self, db_session, platform, product):
        assert catalog_service.refresh_ticket_panel(db_session, platform, GUILD_ID) is None
        assert platform.messages == []

    def test_posts_then_edits_in_place(self, db_session, platform, product):
        upsert_config(db_session, GUILD_ID, ticket_panel_channel_id="panel")
        first = catalog_service.refresh_ticket_panel(db_session, platform, GUILD_ID)
        assert get_config(db_session, GUILD_ID).ticket_panel_message_id == first

        catalog_service.add_product(db_session, GUILD_ID, "Second", "", "801", {"one_time": "2"})
        second = catalog_service.refresh_ticket_panel(db_session, platform, GUILD_ID)
        assert second == first
        assert len(platform.messages) == 1

        menu = platform.messages[0]["payload"]["components"][0]["components"][0]
        assert menu["custom_id"] == PRODUCT_SELECT_ID
        assert [o["label"] for o in menu["options"]] == ["Second", "Windows Tweaks Pack"]

    def test_reposts_when_message_deleted(self, db_session, platform, product):
        upsert_config(db_session, GUILD_ID, ticket_panel_channel_id="panel", ticket_panel_message_id="gone")
        message_id = catalog_service.refresh_ticket_panel(db_session, platform, GUILD_ID)
        assert message_id != "gone"
        assert get_config(db_session, GUILD_ID).ticket_panel_message_id == message_id

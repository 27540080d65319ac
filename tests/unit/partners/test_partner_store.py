import pytest

from src.server.partners.store import PartnerLinkError, SQLitePartnerStore


@pytest.mark.asyncio
async def test_link_and_unlink(tmp_path):
    store = SQLitePartnerStore(str(tmp_path / "partners.db"))
    await store.init()

    assert await store.get_partner("alice") is None
    await store.link_partners("alice", "bob")
    assert await store.get_partner("alice") == "bob"
    assert await store.get_partner("bob") == "alice"

    assert await store.unlink_partner("alice") == "bob"
    assert await store.get_partner("bob") is None
    assert await store.unlink_partner("alice") is None


@pytest.mark.asyncio
async def test_failed_link_changes_nothing(tmp_path):
    store = SQLitePartnerStore(str(tmp_path / "partners.db"))
    await store.init()
    await store.link_partners("alice", "bob")

    with pytest.raises(PartnerLinkError, match="Partner already linked"):
        await store.link_partners("carol", "alice")
    with pytest.raises(PartnerLinkError, match="yourself"):
        await store.link_partners("carol", "carol")

    assert await store.get_partner("carol") is None
    assert await store.get_partner("alice") == "bob"

import asyncio
import pytest

from chanroot.core.channel import ChannelManager
from chanroot.core.encoding import TokenId, leaf_digests
from chanroot.core.merkle import build_root
from chanroot.core.ownership import ACTION_BURN, ACTION_TRANSFER, authorize
from chanroot.core.storage.storage_manager import StorageManager
from chanroot.core.verifier import LedgerVerifier
from chanroot.crypto import generate_keypair


@pytest.fixture
def temp_data_dir(tmp_path):
    """Create a temporary directory for engine data."""
    data_dir = tmp_path / "engine_data"
    data_dir.mkdir()
    return data_dir


def test_channel_persistence(temp_data_dir):
    """Test that channel state is preserved across restarts."""
    ledger = LedgerVerifier()
    alice = generate_keypair()
    bob = generate_keypair()

    # 1. Start engine A
    storage_a = StorageManager(data_dir=temp_data_dir)
    engine_a = ChannelManager(ledger, storage_a)

    async def first_run():
        await engine_a.create_channel("art")
        for _ in range(4):
            await engine_a.mint_next("art", alice.address)
        root = engine_a.get_channel("art").committed_root
        await engine_a.burn("art", 2, authorize(alice, ACTION_BURN, TokenId("art", 2), 0, root))
        root = engine_a.get_channel("art").committed_root
        await engine_a.transfer("art:3", bob.address, authorize(alice, ACTION_TRANSFER, TokenId("art", 3), 0, root, bob.address))

    asyncio.run(first_run())
    expected = engine_a.get_channel("art")
    assert expected.committed_root == build_root(leaf_digests("art", [1, 3, 4]))

    # 2. Stop engine A (close DB)
    storage_a.close()

    # 3. Start engine B on the same data dir and ledger
    storage_b = StorageManager(data_dir=temp_data_dir)
    engine_b = ChannelManager(ledger, storage_b)

    restored = engine_b.get_channel("art")
    assert restored == expected
    assert not engine_b.needs_resync("art")
    assert engine_b.owner_of("art:3") == bob.address
    assert engine_b.tokens_for_owner(alice.address) == [TokenId("art", 1), TokenId("art", 4)]

    async def second_run():
        assert await engine_b.check_root("art")
        token = await engine_b.mint_next("art", bob.address)
        root = engine_b.get_channel("art").committed_root
        # nonce survived the restart
        await engine_b.burn("art", 3, authorize(bob, ACTION_BURN, TokenId("art", 3), 1, root))
        return token

    token = asyncio.run(second_run())
    assert token.token_number == 5
    assert engine_b.get_channel("art").committed_root == build_root(leaf_digests("art", [1, 4, 5]))
    assert [e.kind for e in storage_b.root_history("art")] == ["create", "mint", "mint", "mint", "mint", "burn", "mint", "burn"]

    storage_b.close()


def test_tampered_index_requires_resync(temp_data_dir):
    """An index whose rows no longer produce the stored root is flagged on load."""
    ledger = LedgerVerifier()
    owner = generate_keypair().address

    storage = StorageManager(data_dir=temp_data_dir)
    engine = ChannelManager(ledger, storage)

    async def populate():
        await engine.create_channel("art")
        for _ in range(3):
            await engine.mint_next("art", owner)

    asyncio.run(populate())

    # Lose a row behind the engine's back
    storage.save_leaf_set("art", {TokenId("art", 1), TokenId("art", 2)})
    storage.close()

    storage = StorageManager(data_dir=temp_data_dir)
    engine = ChannelManager(ledger, storage)
    engine.get_channel("art")
    assert engine.needs_resync("art")

    async def repair():
        await engine.resync("art", [1, 2, 3])
        return await engine.mint_next("art", owner)

    assert asyncio.run(repair()).token_number == 4
    assert storage.load_leaf_set("art") == {TokenId("art", n) for n in (1, 2, 3, 4)}
    storage.close()

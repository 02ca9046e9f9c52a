"""
Unit tests for the command line interface.
"""

import asyncio
import json

import pytest
from click.testing import CliRunner

from chanroot.cli.main import cli
from chanroot.core.channel import ChannelManager
from chanroot.core.encoding import leaf_digest, leaf_digests
from chanroot.core.merkle import EMPTY_ROOT, build_root
from chanroot.core.storage import StorageManager
from chanroot.core.verifier import LedgerVerifier
from chanroot.crypto import bytes_to_hex, generate_keypair


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def index_dir(tmp_path):
    """Data directory holding one channel with three minted tokens."""
    storage = StorageManager(tmp_path)
    manager = ChannelManager(LedgerVerifier(), storage)
    owner = generate_keypair().address

    async def populate():
        await manager.create_channel("art")
        for _ in range(3):
            await manager.mint_next("art", owner)

    asyncio.run(populate())
    storage.close()
    return tmp_path


class TestCommitmentCommands:
    """Tests for leaf / root / prove / verify."""

    def test_leaf(self, runner):
        result = runner.invoke(cli, ["leaf", "art", "1"])
        assert result.exit_code == 0
        assert bytes_to_hex(leaf_digest("art", 1)) in result.output

    def test_root(self, runner):
        result = runner.invoke(cli, ["root", "art", "3", "1", "2"])
        assert result.exit_code == 0
        assert result.output.strip() == bytes_to_hex(build_root(leaf_digests("art", [1, 2, 3])))

    def test_root_of_empty_set(self, runner):
        result = runner.invoke(cli, ["root", "art"])
        assert result.output.strip() == bytes_to_hex(EMPTY_ROOT)

    def test_invalid_channel(self, runner):
        result = runner.invoke(cli, ["root", "a:b", "1"])
        assert result.exit_code != 0
        assert "INVALID_CHANNEL_ID" in result.output

    def test_prove_then_verify(self, runner):
        proved = runner.invoke(cli, ["prove", "art", "2", "1", "2", "3", "4", "5"])
        assert proved.exit_code == 0
        proof = json.loads(proved.output)
        siblings = [step["sibling"] for step in proof["steps"]]

        result = runner.invoke(cli, ["verify", proof["root"], "art", "2", *siblings])
        assert result.exit_code == 0
        assert "is a member" in result.output

    def test_verify_rejects_non_member(self, runner):
        proof = json.loads(runner.invoke(cli, ["prove", "art", "2", "1", "2", "3"]).output)
        siblings = [step["sibling"] for step in proof["steps"]]
        result = runner.invoke(cli, ["verify", proof["root"], "art", "4", *siblings])
        assert result.exit_code == 1

    def test_prove_missing_token(self, runner):
        result = runner.invoke(cli, ["prove", "art", "9", "1", "2"])
        assert result.exit_code != 0
        assert "LEAF_NOT_FOUND" in result.output

    def test_verify_bad_hex(self, runner):
        result = runner.invoke(cli, ["verify", "0xzz", "art", "1"])
        assert result.exit_code != 0


class TestIndexCommands:
    """Tests for the channel inspection group."""

    def test_list(self, runner, index_dir):
        result = runner.invoke(cli, ["--data-dir", str(index_dir), "channel", "list"])
        assert result.exit_code == 0
        assert "art" in result.output

    def test_show(self, runner, index_dir):
        result = runner.invoke(cli, ["--data-dir", str(index_dir), "channel", "show", "art"])
        assert result.exit_code == 0
        assert "Supply: 3" in result.output
        assert "Next token: 4" in result.output
        assert "Index consistent: yes" in result.output
        assert "art:3" in result.output

    def test_show_unknown(self, runner, index_dir):
        result = runner.invoke(cli, ["--data-dir", str(index_dir), "channel", "show", "nope"])
        assert result.exit_code != 0

    def test_history(self, runner, index_dir):
        result = runner.invoke(cli, ["--data-dir", str(index_dir), "channel", "history", "art"])
        assert result.exit_code == 0
        assert "v1 create" in result.output
        assert "v4 mint #3" in result.output

    def test_missing_index(self, runner, tmp_path):
        result = runner.invoke(cli, ["--data-dir", str(tmp_path / "empty"), "channel", "list"])
        assert result.exit_code != 0
        assert "No index" in result.output


class TestDemo:

    def test_demo_runs(self, runner):
        result = runner.invoke(cli, ["demo", "--tokens", "3"])
        assert result.exit_code == 0, result.output
        assert "Minted demo:3" in result.output
        assert "Demo complete" in result.output

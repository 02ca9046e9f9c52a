"""
chanroot CLI - Command Line Interface for the Channel Root Protocol

Main entry point for all CLI commands.
"""

import asyncio
import json
import click
from pathlib import Path

from chanroot.utils.logger import setup_logging
from chanroot.core.config import load_config
from chanroot.core.errors import ChanrootError


def _fail(error: ChanrootError):
    raise click.ClickException(f"{error.code}: {error.message}")


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--config", "config_path", default=None, type=click.Path(exists=True, dir_okay=False), help="JSON config file")
@click.option("--data-dir", default=None, help="Data directory (overrides config)")
@click.option("--log-file", is_flag=True, help="Also write logs to <log_dir>/chanroot.log")
@click.version_option(version="0.1.0")
@click.pass_context
def cli(ctx, debug, config_path, data_dir, log_file):
    """Channel Root Protocol - Merkle membership engine for NFT channels"""
    import logging

    config = load_config(config_path)
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()

    level = logging.DEBUG if debug else config.logging_level
    setup_logging(level=level, log_dir=str(config.log_dir), log_to_file=log_file)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# =============================================================================
# Commitment Commands
# =============================================================================


@cli.command("leaf")
@click.argument("channel_id")
@click.argument("token_number", type=int)
def leaf(channel_id, token_number):
    """Print the leaf digest of one token"""
    from chanroot.core.encoding import TokenId
    from chanroot.crypto import bytes_to_hex

    try:
        token = TokenId(channel_id, token_number)
    except ChanrootError as e:
        _fail(e)
    click.echo(f"{token}  {bytes_to_hex(token.leaf)}")


@cli.command("root")
@click.argument("channel_id")
@click.argument("token_numbers", nargs=-1, type=int)
def root(channel_id, token_numbers):
    """Compute the root over a set of token numbers"""
    from chanroot.core.encoding import leaf_digests
    from chanroot.core.merkle import build_root
    from chanroot.crypto import bytes_to_hex

    try:
        click.echo(bytes_to_hex(build_root(leaf_digests(channel_id, token_numbers))))
    except ChanrootError as e:
        _fail(e)


@cli.command("prove")
@click.argument("channel_id")
@click.argument("token_number", type=int)
@click.argument("token_numbers", nargs=-1, type=int)
def prove(channel_id, token_number, token_numbers):
    """Print the membership proof of TOKEN_NUMBER within TOKEN_NUMBERS as JSON"""
    from chanroot.core.encoding import TokenId, leaf_digests
    from chanroot.core.merkle import generate_proof

    try:
        proof = generate_proof(leaf_digests(channel_id, token_numbers), TokenId(channel_id, token_number).leaf)
    except ChanrootError as e:
        _fail(e)
    click.echo(json.dumps(proof.to_dict(), indent=2))


@cli.command("verify")
@click.argument("root_hex")
@click.argument("channel_id")
@click.argument("token_number", type=int)
@click.argument("siblings", nargs=-1)
def verify(root_hex, channel_id, token_number, siblings):
    """Verify a wire proof (ordered sibling hex digests) against ROOT_HEX"""
    from chanroot.core.encoding import TokenId
    from chanroot.core.merkle import verify_path
    from chanroot.crypto import hex_to_bytes
    from chanroot.utils.validation import validate_hex_string

    for name, value in [("root", root_hex)] + [(f"sibling {i}", s) for i, s in enumerate(siblings)]:
        valid, err = validate_hex_string(value, name, expected_bytes=32)
        if not valid:
            raise click.BadParameter(err)

    try:
        token = TokenId(channel_id, token_number)
    except ChanrootError as e:
        _fail(e)

    root_bytes = hex_to_bytes(root_hex)
    path = [hex_to_bytes(s) for s in siblings]

    if verify_path(root_bytes, token.leaf, path):
        click.echo(f"✓ {token} is a member")
    else:
        click.echo(f"✗ {token} is not proven by this path")
        raise SystemExit(1)


# =============================================================================
# Index Commands
# =============================================================================


def _open_storage(ctx):
    from chanroot.core.storage import StorageManager

    config = ctx.obj["config"]
    if not config.db_path.exists():
        raise click.ClickException(f"No index at {config.db_path}")
    return StorageManager(config.data_dir, config.db_name)


@cli.group()
def channel():
    """Persistent index inspection commands"""
    pass


@channel.command("list")
@click.pass_context
def channel_list(ctx):
    """List indexed channels"""
    storage = _open_storage(ctx)
    try:
        ids = storage.channel_ids()
        if not ids:
            click.echo("No channels found.")
        for channel_id in ids:
            click.echo(f"  {channel_id}")
    finally:
        storage.close()


@channel.command("show")
@click.argument("channel_id")
@click.option("--limit", default=20, help="Max tokens to show")
@click.pass_context
def channel_show(ctx, channel_id, limit):
    """Show an indexed channel and check its stored root"""
    from chanroot.core.encoding import leaf_digests
    from chanroot.core.merkle import build_root
    from chanroot.crypto import bytes_to_hex

    storage = _open_storage(ctx)
    try:
        record = storage.load_channel(channel_id)
        if record is None:
            raise click.ClickException(f"Channel {channel_id} not found")

        tokens = sorted(storage.load_leaf_set(channel_id))
        derived = build_root(leaf_digests(channel_id, [t.token_number for t in tokens]))

        click.echo(f"Channel {channel_id}")
        click.echo("-" * 40)
        click.echo(f"  Root: {bytes_to_hex(record.merkle_root)}")
        click.echo(f"  Supply: {len(tokens)}")
        click.echo(f"  Next token: {record.next_token_number}")
        click.echo(f"  Index consistent: {'yes' if derived == record.merkle_root else 'NO - resync required'}")
        for token in tokens[:limit]:
            owner = storage.load_owner(token)
            click.echo(f"    {token}  {owner.owner if owner and owner.owner else '-'}")
        if len(tokens) > limit:
            click.echo(f"    ... {len(tokens) - limit} more")
    finally:
        storage.close()


@channel.command("history")
@click.argument("channel_id")
@click.pass_context
def channel_history(ctx, channel_id):
    """Show accepted root transitions of a channel"""
    from chanroot.crypto import bytes_to_hex

    storage = _open_storage(ctx)
    try:
        entries = storage.root_history(channel_id)
        if not entries:
            click.echo(f"No history for {channel_id}.")
        for entry in entries:
            token = f" #{entry.token_number}" if entry.token_number is not None else ""
            click.echo(f"  v{entry.version} {entry.kind}{token}  {bytes_to_hex(entry.merkle_root)[:18]}...")
    finally:
        storage.close()


# =============================================================================
# Demo Command
# =============================================================================


@cli.command("demo")
@click.option("--tokens", default=5, type=click.IntRange(min=1), help="Tokens to mint")
def demo(tokens):
    """Run an in-memory mint/burn/prove walkthrough against the reference ledger"""
    from chanroot.crypto import generate_keypair, bytes_to_hex
    from chanroot.core.channel import ChannelManager
    from chanroot.core.encoding import TokenId
    from chanroot.core.merkle import verify_path
    from chanroot.core.ownership import ACTION_BURN, authorize
    from chanroot.core.verifier import LedgerVerifier

    async def run():
        verifier = LedgerVerifier()
        manager = ChannelManager(verifier)
        alice = generate_keypair()

        click.echo("=" * 60)
        click.echo("  CHANNEL ROOT PROTOCOL - DEMO")
        click.echo("=" * 60)

        channel = await manager.create_channel("demo")
        click.echo(f"  ✓ Channel created, root={bytes_to_hex(channel.committed_root)[:18]}...")

        for _ in range(tokens):
            token = await manager.mint_next("demo", alice.address)
            click.echo(f"  ✓ Minted {token}")

        info = manager.get_channel_info("demo")
        click.echo(f"  Root: {info['merkle_root'][:18]}...  Supply: {info['total_supply']}")

        proof = manager.get_proof("demo", 1)
        click.echo(f"  ✓ Proof for demo:1 has {len(proof)} steps, valid={verify_path(proof.root, proof.leaf, proof.siblings)}")

        first = TokenId("demo", 1)
        auth = authorize(alice, ACTION_BURN, first, 0, manager.get_channel("demo").committed_root)
        channel = await manager.burn("demo", 1, auth)
        click.echo(f"  ✓ Burned {first}, old proof stale={proof.root != channel.committed_root}")
        click.echo(f"  Ledger accepted {len(verifier.submissions)} updates")

    asyncio.run(run())
    click.echo("✅ Demo complete!")


if __name__ == "__main__":
    cli()

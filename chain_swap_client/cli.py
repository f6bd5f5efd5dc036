"""Command-line interface for the swap client."""

import asyncio
import json
import logging
import signal
import sys

import click
import structlog
from structlog.stdlib import LoggerFactory

from . import __version__
from .config import config, websocket_url
from .exceptions import SwapError
from .messages import SerializedSwapTree, decode
from .models import SwapStatus
from .musig import aggregate_swap_keys
from .orchestrator import SwapOrchestrator
from .service_client import SwapServiceClient
from .session import SwapSession
from .swap_tree import SwapTree, address_script, taproot_address
from .transactions import ClaimTransactionBuilder
from .update_stream import SwapUpdateStream

logging.basicConfig(format="%(message)s", stream=sys.stdout, level=config.log_level.upper())

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@click.group()
@click.version_option(version=__version__)
def cli():
    """Chain Swap Client - atomic cross-chain swaps with cooperative claims."""
    pass


@cli.command()
@click.option("--from", "from_chain", required=True, help="Chain to lock funds on")
@click.option("--to", "to_chain", required=True, help="Chain to receive funds on")
@click.option("--amount", type=int, default=None, help="Amount to lock in satoshis")
@click.option(
    "--address",
    default=None,
    help="Claim address (receiving on the signing chain) or refund address",
)
@click.option(
    "--fee-rate",
    type=float,
    default=config.fee_rate_sat_vbyte,
    help="Fee rate in sat/vbyte for claim and refund transactions",
)
@click.option("--service-url", default=config.service_url, help="Swap service URL")
def swap(from_chain, to_chain, amount, address, fee_rate, service_url):
    """Create a chain swap and drive it until it completes."""
    logger.info("Starting swap client", version=__version__)

    async def run():
        service_client = SwapServiceClient(base_url=service_url)
        update_stream = SwapUpdateStream(
            url=None if service_url == config.service_url else websocket_url(service_url)
        )
        orchestrator = SwapOrchestrator(update_stream)

        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info("Received signal, shutting down", signal=sig)
            loop.create_task(orchestrator.stop())

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

        try:
            session = await SwapSession.create(
                service_client,
                from_chain,
                to_chain,
                amount=amount,
                destination_script=address_script(address) if address else None,
                builder=ClaimTransactionBuilder(fee_rate=fee_rate),
            )
            lockup = session.context.response.lockup_details
            click.echo(f"Swap ID: {session.swap_id}")
            click.echo(f"  Lock {lockup.amount} on {from_chain} to {lockup.lockup_address}")
            if lockup.bip21:
                click.echo(f"  BIP21: {lockup.bip21}")
            click.echo(f"  Timeout block height: {lockup.timeout_block_height}")

            await orchestrator.add_session(session)
            outcomes = await orchestrator.run()
        except (SwapError, ValueError) as e:
            logger.error("Fatal error", error=str(e), exc_info=True)
            sys.exit(1)
        finally:
            await service_client.close()

        status = outcomes.get(session.swap_id, session.status)
        click.echo(f"Swap {session.swap_id} finished: {status.value}")
        if session.context.failure:
            click.echo(f"  Reason: {session.context.failure}")
        for txid in session.context.broadcast_transactions:
            click.echo(f"  Broadcast: {txid}")
        if status != SwapStatus.CLAIMED:
            sys.exit(1)

    asyncio.run(run())


@cli.command("inspect-tree")
@click.option(
    "--tree",
    "tree_json",
    required=True,
    help="Serialized swap tree as JSON, or @path to a JSON file",
)
@click.option("--key", "keys", multiple=True, required=True, help="Public key (hex), twice")
@click.option("--network", default="main", help="Network for the lockup address")
def inspect_tree(tree_json, keys, network):
    """Show the hashes and keys derived from a serialized swap tree."""
    if tree_json.startswith("@"):
        with open(tree_json[1:]) as f:
            tree_json = f.read()

    try:
        tree = SwapTree.from_serialized(decode(SerializedSwapTree, json.loads(tree_json)))
        info = aggregate_swap_keys([bytes.fromhex(key) for key in keys], tree)
    except (SwapError, ValueError) as e:
        click.echo(f"✗ Cannot inspect tree: {e}")
        sys.exit(1)

    click.echo(f"Claim leaf hash:  {tree.claim_leaf.leaf_hash.hex()}")
    click.echo(f"Refund leaf hash: {tree.refund_leaf.leaf_hash.hex()}")
    click.echo(f"Merkle root:      {tree.merkle_root.hex()}")
    click.echo(f"Internal key:     {info.internal_key.hex()}")
    click.echo(f"Output key:       {info.output_key.hex()}")
    click.echo(f"Lockup address:   {taproot_address(info.output_key, network)}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()

"""
Command line entry points.

reflector-distribute      run one reflection distribution from environment settings
reflector-collect-fees    harvest withheld fees once, optionally splitting them
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from solders.keypair import Keypair

from reflector.core.config import (
    CLUSTER_URLS,
    Settings,
    load_settings,
    parse_pubkey,
    parse_split_config,
    split_csv,
)
from reflector.core.exceptions import ConfigurationError, ReflectorError
from reflector.core.logging import get_logger, setup_logging
from reflector.services.keypairs import load_keypair
from reflector.services.reflections import FeeCollectionJob, JsonFileLedgerStore, ReflectionDistributor
from reflector.services.reflections.core.types import RunOutcome, RunStatus
from reflector.services.solana_client import LedgerRpc

console = Console()
logger = get_logger(__name__)

distribute_app = typer.Typer(help="Distribute collected transfer fees to token holders", add_completion=False)
collect_fees_app = typer.Typer(help="Collect withheld transfer fees into a treasury", add_completion=False)


async def run_distribution(settings: Settings) -> RunOutcome:
    treasury = load_keypair(settings.treasury_keypair_path)
    withdraw_authority: Optional[Keypair] = None
    if settings.withdraw_authority_keypair_path:
        withdraw_authority = load_keypair(settings.withdraw_authority_keypair_path)

    store = JsonFileLedgerStore(settings.state_dir, settings.lease_ttl_seconds)

    async with LedgerRpc(settings.rpc_url, settings.solana_commitment, settings.rpc_timeout) as rpc:
        distributor = ReflectionDistributor(
            settings,
            rpc,
            store,
            treasury,
            withdraw_authority=withdraw_authority
        )
        return await distributor.run()


@distribute_app.command()
def distribute(
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Override LOG_FILE"),
):
    """Run one reflection distribution. Settings are read from the environment."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    setup_logging(settings, str(log_file) if log_file else None)

    try:
        outcome = asyncio.run(run_distribution(settings))
    except ReflectorError as e:
        logger.error("Fatal error", error=e.message, code=e.code, details=e.details)
        raise typer.Exit(code=1)
    except Exception as e:
        logger.exception("Fatal error", error=str(e))
        raise typer.Exit(code=1)

    if outcome.status is RunStatus.COMPLETED:
        logger.info("Distribution finished", status=outcome.status.value, success=True)
    else:
        logger.warning("No distribution performed", status=outcome.status.value, pool=outcome.pool)


@collect_fees_app.command()
def collect_fees(
    mint: str = typer.Option(..., "--mint", help="Fee-bearing mint address"),
    authority: Path = typer.Option(..., "--authority", help="Withdraw-withheld authority keypair"),
    treasury: str = typer.Option(..., "--treasury", help="Treasury owner address"),
    accounts: Optional[str] = typer.Option(None, "--accounts", help="Comma-separated token accounts to harvest"),
    url: Optional[str] = typer.Option(None, "--url", help="RPC endpoint"),
    cluster: str = typer.Option("devnet", "--cluster", help="devnet, testnet, mainnet-beta or localhost"),
    program: Optional[str] = typer.Option(None, "--program", help="Expected token program id"),
    split: Optional[str] = typer.Option(None, "--split", help="wallet:percent,... split of the collected amount"),
    treasury_authority: Optional[Path] = typer.Option(
        None, "--treasury-authority", help="Treasury owner keypair when it differs from --authority"
    ),
):
    """Harvest withheld transfer fees into the treasury once."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    setup_logging(settings)

    try:
        if url is None:
            if cluster not in CLUSTER_URLS:
                raise ConfigurationError(
                    f"Unknown cluster {cluster}",
                    {"allowed": list(CLUSTER_URLS)}
                )
            url = CLUSTER_URLS[cluster]

        job_args = dict(
            authority=load_keypair(authority),
            treasury_owner=parse_pubkey("treasury owner", treasury),
            mint=parse_pubkey("mint", mint),
            explicit_accounts=[parse_pubkey("token account", a) for a in split_csv(accounts)] if accounts else None,
            split=parse_split_config(split) if split else None,
            treasury_authority=load_keypair(treasury_authority) if treasury_authority else None,
            program_id=parse_pubkey("program id", program) if program else None,
        )

        console.print(f"📡 Collecting transfer fees for mint {mint}")
        console.print(f"RPC Endpoint: {url}")

        async def _collect():
            async with LedgerRpc(url, settings.solana_commitment, settings.rpc_timeout) as rpc:
                return await FeeCollectionJob(rpc, **job_args).run()

        result = asyncio.run(_collect())
    except ReflectorError as e:
        logger.error("Fee collection failed", error=e.message, code=e.code)
        console.print(f"❌ Fee collection failed: {e.message}")
        raise typer.Exit(code=1)

    console.print(f"✅ Collected {result.mint.ui_amount(result.collected)} tokens into treasury")

    if result.distribution is not None:
        for record in result.distribution.records:
            console.print(f"  • {result.mint.ui_amount(record.amount)} → {record.owner}")


def distribute_main():
    distribute_app()


def collect_fees_main():
    collect_fees_app()


if __name__ == "__main__":
    distribute_main()

"""
Command-line entrypoint.

    swarm-rotator setup
    swarm-rotator run [--dry-run]
    swarm-rotator status
    swarm-rotator consolidate [--to ADDRESS] [--dry-run]
    swarm-rotator cancel
    swarm-rotator set KEY VALUE
    swarm-rotator rotate-password
"""

import argparse
import asyncio
import getpass
import signal
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from rich.panel import Panel
from rich.table import Table
from rich import box

from .chain import ChainClient
from .config import BotConfig, ConfigManager, SECRET_FIELDS
from .consolidation import ConsolidationEngine, TransferResult, summarize_transfers
from .contract import CurveTokenContract
from .derivation import KeyDerivationTree
from .orchestrator import TradeOrchestrator, supervise
from .scanner import WalletScanner
from .scheduler import CancellationToken
from .utils import (
    console,
    setup_logging,
    format_address,
    format_eth,
    format_tx_hash,
    validate_address,
    ConfigurationError,
    SwarmRotatorError,
)


DEFAULT_CONFIG_PATH = "./rotator_config.yaml"


def load_runtime_config(config_path: str, dry_run: bool = False) -> BotConfig:
    """Load from the encrypted YAML file when present, else from the environment."""
    path = Path(config_path)
    if path.exists():
        console.print("[yellow]Enter config password:[/yellow]")
        password = getpass.getpass("> ")
        config = ConfigManager(path).load_config(password)
    else:
        config = BotConfig.from_env()

    if dry_run:
        config.dry_run = True
    config.validate()
    return config


def build_components(config: BotConfig) -> Tuple[ChainClient, KeyDerivationTree]:
    chain = ChainClient.connect(
        config.rpc_url,
        chain_id=config.chain_id,
        receipt_timeout=config.receipt_timeout,
    )
    tree = KeyDerivationTree(config.mnemonic)
    return chain, tree


def setup_command(config_path: str):
    """Interactive setup: store the seed phrase encrypted."""
    console.print(Panel.fit(
        "[bold cyan]Swarm Rotator - Setup[/bold cyan]\n"
        "[dim]Seed phrase is encrypted at rest[/dim]",
        box=box.DOUBLE
    ))

    console.print("[yellow]Enter BIP-39 seed phrase:[/yellow]")
    mnemonic = getpass.getpass("> ")
    try:
        tree = KeyDerivationTree(mnemonic)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        return

    console.print("[yellow]Token contract address:[/yellow]")
    token_address = input("> ").strip()
    if not validate_address(token_address):
        console.print("[red]Invalid token address![/red]")
        return

    console.print("[yellow]RPC URL (blank for Base mainnet):[/yellow]")
    rpc_url = input("> ").strip() or BotConfig.rpc_url

    console.print("[yellow]Create encryption password (min 8 characters):[/yellow]")
    password = getpass.getpass("> ")
    if len(password) < 8:
        console.print("[red]Password must be at least 8 characters![/red]")
        return

    console.print("[yellow]Confirm password:[/yellow]")
    if password != getpass.getpass("> "):
        console.print("[red]Passwords don't match![/red]")
        return

    ConfigManager(Path(config_path)).create_config(
        {'rpc_url': rpc_url, 'token_address': token_address},
        mnemonic,
        password,
    )
    source = tree.derive(0, 0)

    console.print(f"\n[green]✓ Configuration saved to {config_path}[/green]")
    console.print(f"Funding wallet: [bold]{source.address}[/bold] ({source.derivation_path})")
    console.print("Next: swarm-rotator status, then swarm-rotator run --dry-run")


def set_command(config_path: str, key: str, raw_value: str):
    """Change one non-secret setting in the config file."""
    field_info = BotConfig.__dataclass_fields__.get(key)
    if field_info is None or key in SECRET_FIELDS:
        console.print(f"[red]Unknown or protected setting: {key}[/red]")
        return

    default = field_info.default
    try:
        value = yaml.safe_load(raw_value)
    except yaml.YAMLError:
        value = raw_value

    if isinstance(default, bool):
        if not isinstance(value, bool):
            console.print(f"[red]{key} expects true or false[/red]")
            return
    elif isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            console.print(f"[red]{key} expects a number[/red]")
            return
        if isinstance(default, float):
            value = float(value)
        elif value != int(value):
            console.print(f"[red]{key} expects a whole number[/red]")
            return
        else:
            value = int(value)
    else:
        value = raw_value

    manager = ConfigManager(Path(config_path))
    if not manager.config_path.exists():
        console.print(f"[red]No config file at {config_path}. Run setup first.[/red]")
        return

    manager.update_config({key: value})
    console.print(f"[green]✓ {key} = {value}[/green]")


def rotate_password_command(config_path: str):
    """Re-encrypt the stored seed phrase under a new password."""
    manager = ConfigManager(Path(config_path))
    if not manager.config_path.exists():
        console.print(f"[red]No config file at {config_path}. Run setup first.[/red]")
        return

    console.print("[yellow]Current password:[/yellow]")
    old_password = getpass.getpass("> ")

    console.print("[yellow]New password (min 8 characters):[/yellow]")
    new_password = getpass.getpass("> ")
    if len(new_password) < 8:
        console.print("[red]Password must be at least 8 characters![/red]")
        return

    console.print("[yellow]Confirm new password:[/yellow]")
    if new_password != getpass.getpass("> "):
        console.print("[red]Passwords don't match![/red]")
        return

    manager.rotate_password(old_password, new_password)
    console.print("[green]✓ Password changed[/green]")


async def _run_supervised(config: BotConfig) -> int:
    chain, tree = build_components(config)
    contract = CurveTokenContract(chain, config.token_address)
    token = CancellationToken()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, token.cancel)

    def factory() -> TradeOrchestrator:
        return TradeOrchestrator(config, chain, tree, contract, token=token)

    return await supervise(factory, token, restart_delay=config.restart_delay_seconds)


def run_command(config_path: str, dry_run: bool = False):
    """Run the supervised trading loop until Ctrl+C."""
    config = load_runtime_config(config_path, dry_run=dry_run)
    setup_logging(config.log_level, config.log_file)

    console.print(Panel.fit(
        f"[bold cyan]Swarm Rotator[/bold cyan]\n"
        f"Token: {config.token_address}\n"
        f"Interval: {config.trade_interval_minutes:g} min"
        + ("\n[yellow]DRY RUN[/yellow]" if config.dry_run else ""),
        box=box.ROUNDED
    ))
    asyncio.run(_run_supervised(config))
    console.print("[green]Stopped.[/green]")


async def _scan(config: BotConfig):
    chain, tree = build_components(config)
    scanner = WalletScanner(tree, chain, concurrency=config.scan_concurrency)
    records = await scanner.scan(config.scan_accounts, config.scan_wallets)
    return chain, tree, scanner, records


def status_command(config_path: str):
    """Scan the wallet tree and print funded wallets."""
    config = load_runtime_config(config_path)
    setup_logging(config.log_level, None)

    _, _, scanner, records = asyncio.run(_scan(config))
    console.print(scanner.get_stats().to_table())
    active = scanner.active(config.min_active_balance_wei)
    console.print(f"Active wallets (> {format_eth(config.min_active_balance_wei)}): {len(active)}")


def _results_table(results: List[TransferResult]) -> Table:
    table = Table(title="Consolidation", box=box.ROUNDED)
    table.add_column("Source", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Status")
    table.add_column("Tx / Error", style="dim")

    for r in results:
        status = "[green]✓[/green]" if r.success else "[red]✗[/red]"
        table.add_row(format_address(r.source), format_eth(r.amount), status,
                      format_tx_hash(r.tx_hash) if r.success else (r.error or "-"))
    return table


async def _consolidate(config: BotConfig, destination: Optional[str]):
    chain, _, _, records = await _scan(config)
    if not records:
        return None, []
    destination = destination or records[0].address
    engine = ConsolidationEngine(chain, dry_run=config.dry_run)
    return destination, await engine.consolidate(records, destination)


def consolidate_command(config_path: str, destination: Optional[str] = None, dry_run: bool = False):
    """Sweep every funded wallet into one address."""
    if destination and not validate_address(destination):
        console.print("[red]Invalid destination address![/red]")
        return

    config = load_runtime_config(config_path, dry_run=dry_run)
    setup_logging(config.log_level, config.log_file)

    target = destination or "the first funded wallet"
    console.print(f"[yellow]This moves all ETH from scanned wallets to {target}.[/yellow]")
    if input("Type CONSOLIDATE to continue: ").strip() != "CONSOLIDATE":
        console.print("[yellow]Cancelled.[/yellow]")
        return

    destination, results = asyncio.run(_consolidate(config, destination))
    if destination is None:
        console.print("[yellow]No funded wallets found.[/yellow]")
        return

    console.print(_results_table(results))
    summary = summarize_transfers(results)
    console.print(
        f"Moved {format_eth(summary['total_moved'])} to {format_address(destination)} "
        f"({summary['succeeded']}/{summary['transfers']} transfers)"
    )


async def _cancel(config: BotConfig):
    chain, tree = build_components(config)
    contract = CurveTokenContract(chain, config.token_address)
    orchestrator = TradeOrchestrator(config, chain, tree, contract)

    records = await orchestrator.scanner.scan(config.scan_accounts, config.scan_wallets)
    orchestrator.pool.load(records)
    wallet = orchestrator.pool.select_best()
    if wallet is None:
        return None, None
    orchestrator.activate(wallet)
    return wallet, await orchestrator.cancel_pending_transactions()


def cancel_command(config_path: str):
    """Supersede pending transactions of the best wallet."""
    config = load_runtime_config(config_path)
    setup_logging(config.log_level, config.log_file)

    wallet, receipt = asyncio.run(_cancel(config))
    if wallet is None:
        console.print("[yellow]No active wallets found.[/yellow]")
    elif receipt is None:
        console.print(f"[green]No pending transactions on {wallet}[/green]")
    else:
        console.print(f"[green]✓ Pending transactions cleared on {wallet}[/green]")


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="HD-wallet swarm trading bot for bonding-curve tokens")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Encrypted config file")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("setup", help="Store seed phrase and settings")

    run_parser = subparsers.add_parser("run", help="Start trading loop")
    run_parser.add_argument("--dry-run", action="store_true", help="Simulation mode")

    subparsers.add_parser("status", help="Scan wallet tree and show balances")

    consolidate_parser = subparsers.add_parser("consolidate", help="Sweep balances to one wallet")
    consolidate_parser.add_argument("--to", dest="destination", help="Destination address")
    consolidate_parser.add_argument("--dry-run", action="store_true", help="Simulation mode")

    subparsers.add_parser("cancel", help="Cancel pending transactions of the best wallet")

    set_parser = subparsers.add_parser("set", help="Change one setting in the config file")
    set_parser.add_argument("key", help="Setting name, e.g. trade_interval_minutes")
    set_parser.add_argument("value", help="New value")

    subparsers.add_parser("rotate-password", help="Re-encrypt the seed phrase under a new password")

    args = parser.parse_args(argv)

    try:
        if args.command == "setup":
            setup_command(args.config)
        elif args.command == "run":
            run_command(args.config, dry_run=args.dry_run)
        elif args.command == "status":
            status_command(args.config)
        elif args.command == "consolidate":
            consolidate_command(args.config, destination=args.destination, dry_run=args.dry_run)
        elif args.command == "cancel":
            cancel_command(args.config)
        elif args.command == "set":
            set_command(args.config, args.key, args.value)
        elif args.command == "rotate-password":
            rotate_password_command(args.config)
        else:
            parser.print_help()
    except SwarmRotatorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)


if __name__ == "__main__":
    main()

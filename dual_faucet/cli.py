"""Command line interface for the dual-environment faucet."""

import asyncio
import json
import sys
from typing import Optional

import click

from . import __version__
from .address_translator import normalize
from .dispatcher import Dispatcher, graceful_shutdown
from .distribution_history import DistributionHistoryDB
from .errors import ConfigError, InvalidAddress
from .faucet_config import FaucetConfig, load_config
from .health_checker import HealthChecker
from .logging_config import configure_logging
from .operator_session import OperatorSession
from .server import run_server


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _load(ctx: click.Context) -> FaucetConfig:
    if 'config' not in ctx.obj:
        try:
            config = load_config(ctx.obj['config_path'])
        except ConfigError as e:
            raise click.ClickException(str(e))
        configure_logging(config.logging, verbose=ctx.obj['verbose'])
        ctx.obj['config'] = config
    return ctx.obj['config']


def _session(config: FaucetConfig) -> OperatorSession:
    try:
        return OperatorSession.from_env(config.chain.bech32_prefix)
    except ConfigError as e:
        raise click.ClickException(str(e))


@click.group()
@click.version_option(version=__version__, prog_name="dual-faucet")
@click.option("-c", "--config", "config_path", default="faucet_config.yaml", show_default=True,
              help="Faucet configuration file.")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on the console.")
@click.pass_context
def cli(ctx: click.Context, config_path: str, verbose: bool) -> None:
    """Dual-environment test asset faucet."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['verbose'] = verbose


@cli.command()
@click.argument("address")
@click.option("--ip", "client_ip", default=None, help="Client IP for the per-IP limit.")
@click.pass_context
def send(ctx: click.Context, address: str, client_ip: Optional[str]) -> None:
    """Top up ADDRESS (bech32 or 0x hex) to every target balance."""
    config = _load(ctx)
    session = _session(config)

    async def run():
        history = DistributionHistoryDB(config.history.db_path)
        dispatcher = Dispatcher.from_config(config, session, history=history)
        try:
            return await dispatcher.distribute(address, client_ip=client_ip)
        finally:
            await graceful_shutdown(dispatcher)

    result = asyncio.run(run())
    _echo_json(result.to_dict())
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Interface to bind.")
@click.option("--port", default=8088, show_default=True, type=int, help="Port to listen on.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the faucet HTTP service (one rate limiter for every request)."""
    config = _load(ctx)
    session = _session(config)
    run_server(config, session, host=host, port=port)


@cli.command()
@click.argument("address")
@click.option("--prefix", default=None, help="bech32 prefix (defaults to chain.bech32_prefix from the config).")
@click.pass_context
def translate(ctx: click.Context, address: str, prefix: Optional[str]) -> None:
    """Show ADDRESS in both encodings."""
    if prefix is None:
        prefix = _load(ctx).chain.bech32_prefix

    try:
        info = normalize(address, prefix)
    except InvalidAddress as e:
        raise click.ClickException(e.describe())

    _echo_json(info.to_dict())


@cli.command()
@click.option("--refresh", is_flag=True, help="Ignore cached results.")
@click.pass_context
def health(ctx: click.Context, refresh: bool) -> None:
    """Check both environments, the operator float and allowances."""
    config = _load(ctx)
    session = _session(config)

    async def run():
        dispatcher = Dispatcher.from_config(config, session)
        checker = HealthChecker(config, session, dispatcher.ledger_a_client, dispatcher.ledger_b_client)
        try:
            return await checker.check_all(force_refresh=refresh)
        finally:
            await graceful_shutdown(dispatcher)

    results = asyncio.run(run())
    for component, status in results.items():
        marker = "✓" if status.is_healthy else "✗"
        click.echo(f"{marker} {component:<24} {status.detail or status.error_message or ''}")

    if not all(status.is_healthy for status in results.values()):
        sys.exit(1)


@cli.command()
@click.option("--fix", is_flag=True, help="Approve the AtomicMultiSend contract for max amounts.")
@click.pass_context
def approvals(ctx: click.Context, fix: bool) -> None:
    """List tokens whose allowance to the AtomicMultiSend contract is too low."""
    config = _load(ctx)
    session = _session(config)

    async def run():
        dispatcher = Dispatcher.from_config(config, session)
        checker = HealthChecker(config, session, dispatcher.ledger_a_client, dispatcher.ledger_b_client)
        try:
            pending = await checker.needs_approval()
            approved = await checker.approve_max(pending) if fix and pending else {}
            return pending, approved
        finally:
            await graceful_shutdown(dispatcher)

    pending, approved = asyncio.run(run())
    if not pending:
        click.echo("✓ All token allowances cover their targets")
        return

    for asset in pending:
        status = f"approved in {approved[asset.symbol]}" if asset.symbol in approved else "needs approval"
        click.echo(f"⚠ {asset.symbol:<10} {status}")

    if len(approved) < len(pending):
        if not fix:
            click.echo("Run with --fix to approve the contract for the maximum amount.")
        sys.exit(1)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Print distribution statistics from the history database."""
    config = _load(ctx)
    history = DistributionHistoryDB(config.history.db_path)
    try:
        _echo_json(history.get_statistics())
    finally:
        history.close()


def main() -> None:
    cli(obj={})

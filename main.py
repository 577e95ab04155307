# main.py
import asyncio
import sys

import questionary
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from chainarb.config import load_config, network_timeout
from chainarb.errors import ConfigError
from chainarb.logger import AsyncAuditLogger, setup_console_logger
from chainarb.market_engine import MarketEngine
from chainarb.strategy import StrategyEngine
from chainarb.transport import PaperTransport, RelayTransport

# --- UI HELPER FUNCTIONS ---

def startup_selection(config):
    """Interactive CLI to select assets and confirm the trading mode."""
    print("\n🚀 CHAINARB CROSS-CHAIN COMMAND \n")
    assets = questionary.checkbox("Select Assets to Watch:", choices=list(config['assets'].keys())).ask()
    if not assets:
        print("No assets selected. Exiting.")
        sys.exit()

    dry_run = config['system']['dry_run']
    if not dry_run:
        go_live = questionary.confirm("dry_run is OFF. Send real cross-chain messages?", default=False).ask()
        if not go_live:
            dry_run = True
    return assets, dry_run


def build_transport(config, dry_run):
    if dry_run:
        return PaperTransport()
    relay_url = config['messaging']['relay_url']
    if not relay_url:
        raise ConfigError("messaging.relay_url is required when dry_run is off")
    return RelayTransport(relay_url, network_timeout(config), config['encoding']['decimals'])


def generate_dashboard(engine: StrategyEngine, assets):
    """
    Creates the Rich Console Dashboard layout.
    Shows live cross-chain prices, predictions, open positions, messages and P&L.
    """
    # 1. Price Table
    price_table = Table(title="📡 Cross-Chain Feed")
    price_table.add_column("Asset", style="cyan")
    price_table.add_column("Chain", style="magenta")
    price_table.add_column("Price", justify="right", style="green")
    price_table.add_column("Quality", justify="center")
    price_table.add_column("Pred.", justify="right")

    for asset in assets:
        published = engine.published_prediction(asset)
        pred_str = f"{published[0]:,.4f} ({published[1]:.0%})" if published else "-"
        for chain, obs in engine.latest.get(asset, {}).items():
            price_table.add_row(asset, chain, f"{obs.price:,.4f}", obs.quality.value, pred_str)

    # 2. Positions / Messages
    pos_table = Table(title="💰 Open Positions")
    pos_table.add_column("Asset", style="cyan")
    pos_table.add_column("Chain", style="magenta")
    pos_table.add_column("Size", justify="right")
    pos_table.add_column("Entry", justify="right")
    pos_table.add_column("Flag")
    for pos in engine.ledger.open_positions()[:8]:
        flag = "[red]ORPHAN[/red]" if pos.orphaned else ""
        pos_table.add_row(pos.asset, pos.chain, f"{pos.size:.4f}", f"{pos.entry_price:.4f}", flag)

    msg_table = Table(title="📨 Messages")
    msg_table.add_column("Message", style="dim")
    msg_table.add_column("Route")
    msg_table.add_column("Status")
    for tx in engine.messenger.transactions()[-8:]:
        status = tx.status.value + (" (stale)" if tx.stale else "")
        msg_table.add_row(tx.message_id[:14], f"{tx.source_chain}->{tx.destination_chain}", status)

    stats = engine.tracker.stats(open_positions=len(engine.ledger.open_positions()))
    metrics = engine.messenger.metrics()

    # Layout Construction
    layout = Layout()
    layout.split_column(
        Layout(name="top"),
        Layout(name="status"),
        Layout(name="bottom"),
    )
    layout["top"].split_row(
        Layout(Panel(price_table)),
        Layout(Panel(pos_table)),
        Layout(Panel(msg_table)),
    )
    layout["status"].update(Panel(engine.last_status, title="Last Action"))
    layout["status"].size = 3

    footer = Panel(
        f"[bold gold1]NET P&L: ${stats['net_profit']:,.4f} | Trades: {stats['total_trades']} "
        f"| Win rate: {stats['win_rate']:.1f}% | Msg success: {metrics['success_rate']:.1f}% "
        f"| Fees: ${metrics['total_fees_usd']:,.4f}[/bold gold1]",
        style="white on blue",
    )
    layout["bottom"].update(footer)
    layout["bottom"].size = 3
    return layout

# --- MAIN CONTROLLER ---

async def run(config, assets, dry_run):
    logger = setup_console_logger("ChainArb", config['system']['log_level'])
    audit_log = AsyncAuditLogger(config['audit']['trade_log'])
    market = MarketEngine(config, logger)
    engine = StrategyEngine(config, logger, market, build_transport(config, dry_run), audit_log)

    if dry_run:
        logger.info("🔵 DRY RUN: messages are settled by the paper transport")

    try:
        print("Initializing sources...")
        await engine.start()

        console = Console()
        with Live(console=console, refresh_per_second=4) as live:
            await engine.run_forever(assets, on_tick=lambda: live.update(generate_dashboard(engine, assets)))
    finally:
        print("Shutting down resources...")
        await engine.shutdown()


if __name__ == "__main__":
    try:
        raw_conf = load_config()
    except ConfigError as e:
        print(f"❌ Config invalid: {e}")
        sys.exit(1)
    try:
        sel_assets, is_dry = startup_selection(raw_conf)
        asyncio.run(run(raw_conf, sel_assets, is_dry))
    except KeyboardInterrupt:
        print("\n🛑 Bot Stopped by User.")
        sys.exit()

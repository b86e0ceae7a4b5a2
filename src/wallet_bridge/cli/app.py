"""CLI for the wallet bridge - review pending actions and run the server from the terminal."""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import logging
from datetime import datetime

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from wallet_bridge.errors import BridgeError

app = typer.Typer(
    name="wallet-bridge",
    help="Bridge web pages to a local wallet, with every sensitive action approved by you.",
    no_args_is_help=True,
)
console = Console()

_selected_profile: str = "default"


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"wallet-bridge {version('wallet-bridge')}")
        raise typer.Exit()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(
    profile: str = typer.Option(
        "default",
        "--profile",
        "-P",
        help="Wallet profile to operate on",
        envvar="WALLET_BRIDGE_PROFILE",
    ),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Bridge web pages to a local wallet, with every sensitive action approved by you."""
    global _selected_profile
    _selected_profile = profile
    _setup_logging(log_level)


def _run(coro):
    """Run an async function synchronously."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor() as pool:
        return pool.submit(asyncio.run, coro).result()


def _with_bridge(fn):
    """Load the selected profile, run ``fn(bridge)`` and always shut down."""
    from wallet_bridge.runtime import WalletBridge

    async def _inner():
        bridge = await WalletBridge.load(profile=_selected_profile)
        try:
            return await fn(bridge)
        finally:
            await bridge.shutdown()

    try:
        return _run(_inner())
    except FileNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    except BridgeError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


def _parse_result(raw: str | None):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _fmt_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _summary(action) -> str:
    p = action.payload
    if "message" in p:
        text = str(p["message"])
        return text if len(text) <= 40 else text[:37] + "..."
    if "typedData" in p:
        return f"typed data: {p['typedData'].get('primaryType', '?')}"
    if "transaction" in p:
        tx = p["transaction"]
        return f"to {tx.get('to')} value {tx.get('value', '0x0')}"
    if "chainName" in p:
        return f"add {p['chainName']} ({p['chainId']})"
    if action.kind.value == "connection":
        return f"connect {p.get('name') or action.origin}"
    return ""


# ------------------------------------------------------------------
# init / serve / badge
# ------------------------------------------------------------------


@app.command()
def init(
    name: str = typer.Option(None, "--name", "-n", help="Profile display name"),
    chain: str = typer.Option("sepolia", "--chain", "-c", help="Default chain"),
    port: int = typer.Option(8430, "--port", "-p", help="Server port"),
):
    """Initialize a wallet profile in the current directory."""
    from wallet_bridge.config import BridgeConfig, ServerConfig, WalletConfig
    from wallet_bridge.runtime import WalletBridge

    config = BridgeConfig(
        name=name or _selected_profile,
        wallet=WalletConfig(default_chain=chain),
        server=ServerConfig(port=port),
    )

    async def _init():
        bridge = await WalletBridge.init(profile=_selected_profile, config=config)
        path = bridge.profile_dir
        await bridge.shutdown()
        return path

    try:
        path = _run(_init())
    except BridgeError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    console.print(Panel(
        f"[bold green]Profile '{config.name}' initialized[/bold green]\n\n"
        f"Directory: [cyan]{path}[/cyan]\n"
        f"Default chain: {chain}\n\n"
        f"[dim]Next: 'wallet-bridge wallet create', then 'wallet-bridge serve'.[/dim]",
        title="Wallet Bridge",
    ))


@app.command()
def serve(
    port: int = typer.Option(None, "--port", "-p", help="Port to serve on (default from config)"),
    host: str = typer.Option(None, "--host", help="Host to bind to (default from config)"),
):
    """Run the page WebSocket, approval surface and REST API."""
    from wallet_bridge.config import get_profile_dir, load_or_default
    from wallet_bridge.server.app import run_server

    config = load_or_default(get_profile_dir(_selected_profile, create=False) / "config.yaml")
    _setup_logging(config.logging.level)
    host = host or config.server.host
    port = port or config.server.port

    console.print(f"[bold green]Starting wallet bridge at http://{host}:{port}[/bold green]")
    run_server(host=host, port=port, profile=_selected_profile)


@app.command()
def badge():
    """Show the number of actions waiting for approval."""

    async def _badge(bridge):
        return await bridge.badge.refresh()

    count = _with_bridge(_badge)
    if count:
        console.print(f"[bold yellow]{count}[/bold yellow] pending action(s)")
    else:
        console.print("[green]Nothing pending.[/green]")


# ------------------------------------------------------------------
# wallet sub-commands
# ------------------------------------------------------------------

wallet_app = typer.Typer(
    name="wallet",
    help="Manage the local wallet account.",
    no_args_is_help=True,
)
app.add_typer(wallet_app, name="wallet")


@wallet_app.command("create")
def wallet_create(
    import_key: bool = typer.Option(False, "--import-key", help="Import an existing private key"),
    password: str = typer.Option(None, "--password", envvar="WALLET_BRIDGE_PASSWORD", hidden=True),
):
    """Generate (or import) an Ethereum account with an encrypted keystore."""
    from wallet_bridge.config import get_profile_dir
    from wallet_bridge.wallet.session import WalletSession
    from wallet_bridge.wallet.signer import EthSigner

    session = WalletSession(get_profile_dir(_selected_profile, create=False) / "wallet", EthSigner())
    if session.has_keystore:
        console.print("[yellow]Wallet already exists.[/yellow]")
        console.print(f"Wallet address: [cyan]{session.address}[/cyan]")
        return

    private_key = None
    if import_key:
        raw = console.input("[bold]Private key (hex): [/bold]", password=True).strip()
        private_key = bytes.fromhex(raw.removeprefix("0x"))

    if password is None:
        password = console.input("[bold]Set wallet password: [/bold]", password=True)
        confirm = console.input("[bold]Confirm password: [/bold]", password=True)
        if password != confirm:
            console.print("[red]Passwords do not match.[/red]")
            raise typer.Exit(1)

    try:
        addr = session.create(password, private_key)
    except BridgeError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)
    session.lock()
    console.print(Panel(
        f"[bold green]Wallet created![/bold green]\n\n"
        f"Address: [cyan]{addr}[/cyan]\n\n"
        f"[dim]Your keystore is encrypted with your password.\n"
        f"Unlock it with 'wallet-bridge actions approve --password' or the server's /api/wallet/unlock.[/dim]",
        title="Wallet",
    ))


@wallet_app.command("address")
def wallet_address():
    """Show the wallet address and current chain."""

    async def _address(bridge):
        return bridge.status()

    status = _with_bridge(_address)
    if status["address"] is None:
        console.print("[yellow]No wallet found.[/yellow] Run 'wallet-bridge wallet create' first.")
        raise typer.Exit(1)

    console.print(Panel(
        f"[cyan]{status['address']}[/cyan]\n\n"
        f"[dim]Current chain: {status['chain']} ({status['chainId']})[/dim]",
        title="Wallet Address",
    ))


# ------------------------------------------------------------------
# actions sub-commands
# ------------------------------------------------------------------

actions_app = typer.Typer(
    name="actions",
    help="Review and resolve actions waiting for consent.",
    no_args_is_help=True,
)
app.add_typer(actions_app, name="actions")


@actions_app.command("list")
def actions_list(
    status: str = typer.Option("pending", "--status", "-s", help="pending, approved, rejected, expired or all"),
):
    """List pending actions (or the history with --status)."""

    async def _list(bridge):
        return await bridge.queue.list_actions(None if status == "all" else status)

    try:
        actions = _with_bridge(_list)
    except ValueError:
        console.print(f"[red]Unknown status '{status}'.[/red]")
        raise typer.Exit(1)

    if not actions:
        console.print(f"[dim]No {'' if status == 'all' else status + ' '}actions.[/dim]")
        return

    table = Table(title=f"Actions ({status})")
    table.add_column("ID", style="bold")
    table.add_column("Kind", style="cyan")
    table.add_column("Method")
    table.add_column("Origin", style="dim")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    table.add_column("Summary")

    colors = {"pending": "yellow", "approved": "green", "rejected": "red", "expired": "dim"}
    for a in actions:
        color = colors.get(a.status.value, "white")
        table.add_row(
            a.id,
            a.kind.value,
            a.method,
            a.origin or "-",
            f"[{color}]{a.status.value}[/{color}]",
            _fmt_time(a.created_at),
            _summary(a),
        )
    console.print(table)


@actions_app.command("show")
def actions_show(action_id: str = typer.Argument(help="Action ID")):
    """Show one action with its full payload."""

    async def _show(bridge):
        return await bridge.queue.get(action_id)

    a = _with_bridge(_show)
    lines = [
        f"[bold]{a.kind.value}[/bold] via [cyan]{a.method}[/cyan]",
        f"Origin: {a.origin or '-'}",
        f"Request: {a.request_id or '-'}",
        f"Status: {a.status.value}",
        f"Created: {_fmt_time(a.created_at)}",
        f"Resolved: {_fmt_time(a.resolved_at)}",
    ]
    if a.error:
        lines.append(f"Error: [red]{escape(a.error)}[/red]")
    if a.result is not None:
        lines.append(f"Result: {escape(json.dumps(a.result))}")
    lines.append("")
    lines.append(escape(json.dumps(a.payload, indent=2)))
    console.print(Panel("\n".join(lines), title=f"Action {a.id}"))


@actions_app.command("approve")
def actions_approve(
    action_id: str = typer.Argument(help="Action ID"),
    result: str = typer.Option(None, "--result", "-r", help="Result to reply with (e.g. the transaction hash)"),
    password: str = typer.Option(None, "--password", envvar="WALLET_BRIDGE_PASSWORD", hidden=True),
):
    """Approve a pending action.

    Signature requests are signed here, which needs the wallet password.
    """
    from wallet_bridge.storage.models import ActionKind

    async def _approve(bridge):
        action = await bridge.queue.get(action_id)
        if action.is_pending and action.kind is ActionKind.SIGNATURE and result is None:
            secret = password
            if secret is None:
                secret = console.input("[bold]Wallet password: [/bold]", password=True)
            bridge.session.unlock(secret)
        return await bridge.dispatcher.approve(action_id, _parse_result(result))

    outcome = _with_bridge(_approve)
    if outcome.applied:
        console.print(f"[green]Approved[/green] action {action_id}.")
    else:
        console.print(f"[yellow]Action {action_id} was already {outcome.action.status.value}.[/yellow]")


@actions_app.command("reject")
def actions_reject(
    action_id: str = typer.Argument(help="Action ID"),
    reason: str = typer.Option(None, "--reason", help="Reason shown to the page"),
):
    """Reject a pending action."""

    async def _reject(bridge):
        return await bridge.dispatcher.reject(action_id, reason)

    outcome = _with_bridge(_reject)
    if outcome.applied:
        console.print(f"[red]Rejected[/red] action {action_id}.")
    else:
        console.print(f"[yellow]Action {action_id} was already {outcome.action.status.value}.[/yellow]")


@actions_app.command("sweep")
def actions_sweep():
    """Expire stale actions and purge old history now."""

    async def _sweep(bridge):
        return await bridge.sweeper.run_once()

    report = _with_bridge(_sweep)
    console.print(
        f"Expired [bold]{len(report.expired)}[/bold], purged [bold]{report.purged}[/bold], "
        f"disconnected [bold]{len(report.disconnected)}[/bold] idle origin(s). "
        f"Pending: [bold]{report.badge}[/bold]"
    )


# ------------------------------------------------------------------
# connections sub-commands
# ------------------------------------------------------------------

connections_app = typer.Typer(
    name="connections",
    help="Manage origins connected to the wallet.",
    no_args_is_help=True,
)
app.add_typer(connections_app, name="connections")


@connections_app.command("list")
def connections_list():
    """Show connected origins."""

    async def _list(bridge):
        return await bridge.connections.list_all()

    records = _with_bridge(_list)
    if not records:
        console.print("[dim]No connected origins.[/dim]")
        return

    table = Table(title="Connections")
    table.add_column("Origin", style="bold")
    table.add_column("Name")
    table.add_column("Account", style="cyan")
    table.add_column("Chain")
    table.add_column("Last used", style="dim")
    for c in records:
        table.add_row(c.origin, c.name or "-", c.account, hex(c.chain_id), _fmt_time(c.last_used_at))
    console.print(table)


@connections_app.command("revoke")
def connections_revoke(origin: str = typer.Argument(help="Origin to disconnect")):
    """Disconnect an origin."""

    async def _revoke(bridge):
        return await bridge.dispatcher.revoke(origin)

    if _with_bridge(_revoke):
        console.print(f"Disconnected [cyan]{origin}[/cyan].")
    else:
        console.print(f"[yellow]{origin} was not connected.[/yellow]")
        raise typer.Exit(1)

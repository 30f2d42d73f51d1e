"""
Top-level CLI commands: run, send, status.
"""

import asyncio
import functools
from typing import Optional

import typer

from wasession.config import SessionConfig
from wasession.connection import ConnectionManager
from wasession.credentials import FileCredentialStore
from wasession.exceptions import SessionError
from wasession.logger import setup_logging
from wasession.models import InboundMessage, TerminalReason
from wasession.transport.bridge import BridgeTransport


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    setup_logging(level="DEBUG" if verbose else "WARNING")


def build_manager(config: SessionConfig, **kwargs) -> ConnectionManager:
    """Wire a ConnectionManager to the file store and the bridge transport."""
    return ConnectionManager(
        store=FileCredentialStore(config.auth_dir),
        transport_factory=functools.partial(BridgeTransport, url=config.bridge_url),
        config=config,
        **kwargs,
    )


def _show_qr(payload: str) -> None:
    typer.echo("\n📱 Scan this QR payload with your phone to pair:\n")
    typer.echo(payload)
    typer.echo("")


def _print_message(message: InboundMessage) -> None:
    name = f" ({message.push_name})" if message.push_name else ""
    typer.echo(f"💬 {message.sender}{name}: {message.text}")


async def _run_session(config: SessionConfig) -> None:
    stopped = asyncio.Event()

    def _on_terminal(reason: TerminalReason) -> None:
        if reason == TerminalReason.LOGGED_OUT:
            typer.echo("🔴 Device logged out. Run again to scan a new QR code.")
        else:
            typer.echo("🔴 Connection closed permanently.")
        stopped.set()

    manager = build_manager(config, qr_presenter=_show_qr, on_terminal=_on_terminal)
    manager.on_message(_print_message)

    await manager.initialize()
    try:
        if await manager.wait_until_connected(timeout=config.connect_timeout_ms / 1000):
            typer.echo(f"🟢 Connected as session '{config.session_id}'")
        await stopped.wait()
    finally:
        await manager.close()


async def _send_once(config: SessionConfig, recipient: str, text: str, wait: float):
    manager = build_manager(config, qr_presenter=_show_qr)
    await manager.initialize()
    try:
        if not await manager.wait_until_connected(timeout=wait):
            raise typer.Exit(code=1)
        return await manager.send_message(recipient, text)
    finally:
        await manager.close()


def register_commands(app: typer.Typer):
    """Register top-level commands."""

    @app.command()
    def run(
        session: Optional[str] = typer.Option(
            None, "--session", "-s", help="Session id (credential directory name)"
        ),
        bridge_url: Optional[str] = typer.Option(
            None, "--bridge-url", help="WebSocket URL of the protocol bridge"
        ),
    ):
        """Connect and print inbound messages until interrupted."""
        config = SessionConfig.from_env(session_id=session, bridge_url=bridge_url)
        try:
            asyncio.run(_run_session(config))
        except KeyboardInterrupt:
            typer.echo("\nShutting down...")
        except SessionError as e:
            typer.echo(f"❌ {e}")
            raise typer.Exit(code=1)

    @app.command()
    def send(
        recipient: str = typer.Argument(help="Phone number, e.g. '(11) 95677-3737'"),
        text: str = typer.Argument(help="Message text"),
        wait: float = typer.Option(
            10.0, "--wait", "-w", help="Seconds to wait for the connection"
        ),
        session: Optional[str] = typer.Option(None, "--session", "-s"),
        bridge_url: Optional[str] = typer.Option(None, "--bridge-url"),
    ):
        """Send a single text message."""
        config = SessionConfig.from_env(session_id=session, bridge_url=bridge_url)
        try:
            receipt = asyncio.run(_send_once(config, recipient, text, wait))
        except typer.Exit:
            typer.echo(f"❌ Not connected after {wait}s")
            raise
        except SessionError as e:
            typer.echo(f"❌ {e}")
            raise typer.Exit(code=1)

        typer.echo(f"✅ Message sent to {recipient}")
        if receipt:
            typer.echo(f"   Receipt: {receipt}")

    @app.command()
    def status(
        session: Optional[str] = typer.Option(None, "--session", "-s"),
    ):
        """Show the configured session and stored credentials."""
        config = SessionConfig.from_env(session_id=session)
        store = FileCredentialStore(config.auth_dir)

        typer.echo(f"📡 Session: {config.session_id}")
        typer.echo(f"   Auth dir: {store.session_dir(config.session_id)}")
        typer.echo(f"   Bridge: {config.bridge_url}")
        typer.echo(
            f"   Reconnect: up to {config.max_reconnect_attempts} attempts, "
            f"{config.base_reconnect_delay}s linear backoff"
        )

        if not asyncio.run(store.exists(config.session_id)):
            typer.echo("   Credentials: none (QR pairing required)")
            return

        credentials = asyncio.run(store.load(config.session_id))
        state = "paired" if credentials.registered else "not paired yet"
        typer.echo(f"   Credentials: stored, {state}")

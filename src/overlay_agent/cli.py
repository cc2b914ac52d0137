#!/usr/bin/env python3
"""overlay-agent CLI

Every command prints one JSON object, ``{"success": true, "data": ...}`` or
``{"success": false, "error": ..., "errorCode": ...}``, and exits non-zero
on failure. ``connect`` prints one JSON line per routed message instead.
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AgentConfig
from .context import AgentContext
from .errors import ErrorHandler, ValidationError
from .overlay.registry import OverlayRegistry
from .runner import AgentRunner
from .services.requests import request_service, respond_service, validate_identity_key

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="overlay-agent",
    help="BSV overlay agent: registration, discovery, signed relay messaging and paid services",
    add_completion=False,
)

console = Console()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """ログ設定 (stderr)"""
    if verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, os.getenv("OVERLAY_LOG_LEVEL", "WARNING").upper(), logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログ"),
):
    configure_logging(verbose)


# ============================================================================
# Output helpers
# ============================================================================

def emit(data: Any) -> None:
    typer.echo(json.dumps({"success": True, "data": data}, ensure_ascii=False))


def emit_error(error: Exception, command: str) -> None:
    ErrorHandler.log_error(error, command)
    typer.echo(json.dumps(ErrorHandler.format_error_response(error), ensure_ascii=False))
    raise typer.Exit(code=1)


def parse_json_arg(value: Optional[str]) -> Any:
    """JSON if it parses, otherwise the raw string"""
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def run_command(command: str, action: Callable[[AgentContext], Awaitable[Any]]) -> Any:
    """Build the context, run ``action`` and close the context.

    Failures are printed as the JSON error wrapper and exit with code 1.
    """
    async def _run():
        ctx = AgentContext.from_config(AgentConfig.from_env())
        try:
            return await action(ctx)
        finally:
            await ctx.close()

    try:
        return asyncio.run(_run())
    except Exception as e:
        emit_error(e, command)


def print_table(title: str, columns: List[str], rows: List[List[Any]]) -> None:
    table = Table(title=title)
    for column in columns:
        table.add_column(column, style="cyan" if column == columns[0] else None)
    for row in rows:
        table.add_row(*["" if v is None else str(v) for v in row])
    console.print(table)


# ============================================================================
# Setup / wallet
# ============================================================================

@app.command("setup-check")
def setup_check():
    """Report configuration and what is ready"""
    try:
        config = AgentConfig.from_env()
    except Exception as e:
        emit_error(e, "setup-check")
    hook = config.load_hook_settings()
    emit({
        "version": __version__,
        "network": config.network,
        "overlayUrl": config.overlay_url,
        "walletDir": str(config.wallet_dir),
        "stateDir": str(config.state_dir),
        "walletInitialized": config.wallet_identity_path.exists(),
        "walletProvider": config.wallet_provider,
        "registered": config.registration_path.exists(),
        "hooksConfigured": bool(hook.get("token")),
        "hookPort": hook.get("port"),
        "explorerApiKey": bool(config.woc_api_key),
    })


@app.command("identity")
def identity():
    """Show the agent's identity key"""
    async def _identity(ctx: AgentContext):
        return {"identityKey": ctx.identity_key, "network": ctx.config.network}
    emit(run_command("identity", _identity))


@app.command("address")
def address():
    """Show the P2PKH funding address"""
    async def _address(ctx: AgentContext):
        addr = ctx.ledger.address()
        return {
            "address": addr,
            "network": ctx.config.network,
            "explorer": f"{ctx.config.explorer_base}/address/{addr}",
        }
    emit(run_command("address", _address))


@app.command("balance")
def balance():
    """Wallet balance plus on-chain balance of the funding address"""
    async def _balance(ctx: AgentContext):
        result: Dict[str, Any] = {"address": ctx.ledger.address()}
        if ctx.wallet_provider is not None:
            async with ctx.wallet() as wallet:
                result["walletBalance"] = await wallet.get_balance()
        onchain = await ctx.explorer.get_balance(result["address"])
        result["onChain"] = onchain
        result["totalOnChain"] = onchain["confirmed"] + onchain["unconfirmed"]
        return result
    emit(run_command("balance", _balance))


# ============================================================================
# Registration / services / discovery
# ============================================================================

@app.command("register")
def register(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Agent name (default: AGENT_NAME)"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="Agent description"),
):
    """Publish the identity record (and current services) on the overlay"""
    emit(run_command("register", lambda ctx: OverlayRegistry(ctx).register(name, description)))


@app.command("unregister")
def unregister():
    """Remove the local registration record"""
    async def _unregister(ctx: AgentContext):
        return OverlayRegistry(ctx).unregister()
    emit(run_command("unregister", _unregister))


@app.command("advertise")
def advertise(
    service_id: str = typer.Argument(..., help="Service id"),
    name: str = typer.Argument(..., help="Display name"),
    price_sats: int = typer.Argument(..., help="Price in satoshis"),
    description: Optional[str] = typer.Argument(None, help="Description"),
):
    """Advertise a new service"""
    emit(run_command(
        "advertise", lambda ctx: OverlayRegistry(ctx).advertise(service_id, name, price_sats, description)
    ))


@app.command("readvertise")
def readvertise(
    service_id: str = typer.Argument(..., help="Service id"),
    price_sats: Optional[int] = typer.Argument(None, help="New price in satoshis"),
    name: Optional[str] = typer.Option(None, "--name", help="New display name"),
    description: Optional[str] = typer.Option(None, "--description", help="New description"),
):
    """Re-publish an existing service with updated fields"""
    emit(run_command(
        "readvertise",
        lambda ctx: OverlayRegistry(ctx).readvertise(service_id, name=name, price_sats=price_sats,
                                                     description=description),
    ))


@app.command("remove")
def remove(service_id: str = typer.Argument(..., help="Service id")):
    """Remove a service from the local registry"""
    async def _remove(ctx: AgentContext):
        return OverlayRegistry(ctx).remove(service_id)
    emit(run_command("remove", _remove))


@app.command("services")
def services(table: bool = typer.Option(False, "--table", help="Render as a table")):
    """List locally advertised services"""
    async def _services(ctx: AgentContext):
        return [s.to_dict() for s in OverlayRegistry(ctx).services()]
    data = run_command("services", _services)
    if table:
        print_table("Services", ["serviceId", "name", "priceSats", "txid"],
                    [[s["serviceId"], s["name"], s["priceSats"], s.get("txid")] for s in data])
        return
    emit({"services": data, "count": len(data)})


@app.command("discover")
def discover(
    service: Optional[str] = typer.Option(None, "--service", help="Filter by service id"),
    agent: Optional[str] = typer.Option(None, "--agent", help="Filter by agent name"),
):
    """Query the overlay for agents and services"""
    emit(run_command("discover", lambda ctx: OverlayRegistry(ctx).discover(service, agent)))


# ============================================================================
# Relay messaging
# ============================================================================

@app.command("send")
def send(
    target: str = typer.Argument(..., help="Recipient identity key"),
    msg_type: str = typer.Argument(..., help="Message type (ping, ...)"),
    payload: str = typer.Argument(..., help="JSON payload or plain text"),
):
    """Sign and send one relay message"""
    async def _send(ctx: AgentContext):
        validate_identity_key(target)
        body = parse_json_arg(payload)
        if not isinstance(body, dict):
            body = {"text": body}
        runner = AgentRunner(ctx)
        message_id = await runner.relay.send(target, msg_type, body)
        return {"sent": True, "messageId": message_id, "to": target, "type": msg_type, "signed": True}
    emit(run_command("send", _send))


@app.command("inbox")
def inbox(since: Optional[str] = typer.Option(None, "--since", help="Only messages after this timestamp")):
    """Show pending relay messages with signature status"""
    emit(run_command("inbox", lambda ctx: AgentRunner(ctx).relay.fetch_inbox(since)))


@app.command("ack")
def ack(message_ids: List[str] = typer.Argument(..., help="Message ids")):
    """Acknowledge relay messages"""
    async def _ack(ctx: AgentContext):
        acked = await AgentRunner(ctx).relay.ack(message_ids)
        return {"acked": acked, "messageIds": message_ids}
    emit(run_command("ack", _ack))


@app.command("poll")
def poll(since: Optional[str] = typer.Option(None, "--since")):
    """Process the inbox once"""
    emit(run_command("poll", lambda ctx: AgentRunner(ctx).poll(since)))


@app.command("connect")
def connect():
    """Process relay messages in real time until SIGINT/SIGTERM"""
    def print_event(event: Dict[str, Any]) -> None:
        typer.echo(json.dumps(event, ensure_ascii=False))

    run_command("connect", lambda ctx: AgentRunner(ctx, on_event=print_event).connect())


# ============================================================================
# Paid services
# ============================================================================

@app.command("request-service")
def request_service_command(
    target: str = typer.Argument(..., help="Provider identity key"),
    service_id: str = typer.Argument(..., help="Service id"),
    sats: int = typer.Argument(5, help="Payment in satoshis"),
    input_json: Optional[str] = typer.Argument(None, help="Service input (JSON or text)"),
):
    """Send a paid service request"""
    async def _request(ctx: AgentContext):
        runner = AgentRunner(ctx)
        return await request_service(ctx, runner.relay, target, service_id, sats, parse_json_arg(input_json))
    emit(run_command("request-service", _request))


@app.command("respond-service")
def respond_service_command(
    request_id: str = typer.Argument(..., help="Request (message) id"),
    recipient: str = typer.Argument(..., help="Requester identity key"),
    service_id: str = typer.Argument(..., help="Service id"),
    result_json: str = typer.Argument(..., help="Result (JSON or text)"),
):
    """Answer a queued service request"""
    async def _respond(ctx: AgentContext):
        runner = AgentRunner(ctx)
        return await respond_service(runner.relay, runner.queue, request_id, recipient, service_id,
                                     parse_json_arg(result_json))
    emit(run_command("respond-service", _respond))


@app.command("queue")
def queue(
    show_all: bool = typer.Option(False, "--all", help="Include fulfilled entries"),
    table: bool = typer.Option(False, "--table", help="Render as a table"),
):
    """List queued service requests"""
    async def _queue(ctx: AgentContext):
        q = AgentRunner(ctx).queue
        entries = q.entries() if show_all else q.list_pending()
        return [e.to_dict() for e in entries]
    data = run_command("queue", _queue)
    if table:
        print_table("Service queue", ["requestId", "serviceId", "from", "satoshisReceived", "status"],
                    [[e["requestId"], e["serviceId"], e["from"], e["satoshisReceived"], e["status"]] for e in data])
        return
    emit({"entries": data, "count": len(data)})


# ============================================================================
# Baemail
# ============================================================================

@app.command("baemail-setup")
def baemail_setup(
    channel: str = typer.Argument(..., help="Delivery channel"),
    standard: int = typer.Argument(..., help="Standard rate (sats)"),
    priority: Optional[int] = typer.Argument(None, help="Priority rate (default 2x standard)"),
    urgent: Optional[int] = typer.Argument(None, help="Urgent rate (default 5x standard)"),
):
    """Configure the baemail forwarding service"""
    async def _setup(ctx: AgentContext):
        runner = AgentRunner(ctx)
        cfg = runner.baemail.setup(channel, standard, priority, urgent)
        return {
            "configured": True,
            "config": cfg.to_dict(),
            "hooksConfigured": runner.baemail.hook.is_configured(),
            "note": f"Advertise with: overlay-agent advertise baemail \"Baemail\" {cfg.standard}",
        }
    emit(run_command("baemail-setup", _setup))


@app.command("baemail-config")
def baemail_config():
    """Show the baemail configuration"""
    async def _config(ctx: AgentContext):
        return AgentRunner(ctx).baemail.require_config().to_dict()
    emit(run_command("baemail-config", _config))


@app.command("baemail-block")
def baemail_block(identity_key: str = typer.Argument(..., help="Sender identity key")):
    """Block a sender"""
    async def _block(ctx: AgentContext):
        count = AgentRunner(ctx).baemail.block(identity_key)
        return {"blocked": identity_key, "blocklistSize": count}
    emit(run_command("baemail-block", _block))


@app.command("baemail-unblock")
def baemail_unblock(identity_key: str = typer.Argument(..., help="Sender identity key")):
    """Unblock a sender"""
    async def _unblock(ctx: AgentContext):
        count = AgentRunner(ctx).baemail.unblock(identity_key)
        return {"unblocked": identity_key, "blocklistSize": count}
    emit(run_command("baemail-unblock", _unblock))


@app.command("baemail-log")
def baemail_log(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries"),
    table: bool = typer.Option(False, "--table", help="Render as a table"),
):
    """Recent deliveries, newest first"""
    async def _log(ctx: AgentContext):
        if limit < 0:
            raise ValidationError("limit must be >= 0", {"limit": limit})
        baemail = AgentRunner(ctx).baemail
        return {"entries": baemail.recent_log(limit), "total": len(baemail.log_entries())}
    data = run_command("baemail-log", _log)
    if table:
        print_table("Baemail log", ["requestId", "tier", "paidSats", "deliverySuccess", "refundStatus"],
                    [[e.get("requestId"), e.get("tier"), e.get("paidSats"), e.get("deliverySuccess"),
                      e.get("refundStatus")] for e in data["entries"]])
        return
    emit(data)


@app.command("baemail-refund")
def baemail_refund(request_id: str = typer.Argument(..., help="Request id of the failed delivery")):
    """Refund a failed delivery to the sender"""
    emit(run_command("baemail-refund", lambda ctx: AgentRunner(ctx).baemail.refund(request_id)))


def main():
    app()


if __name__ == "__main__":
    main()

"""
CLI 命令模块 - warelay 的所有命令行命令定义。

本模块使用 Typer 框架定义 warelay 的 CLI 命令：
- onboard：初始化默认配置文件
- gateway：启动转发服务（会话监督 + 消息转发 + 保活）
- send：连接会话后发送一条消息
- status：查看配置状态
- clear-session：删除持久化的会话凭据
- webhook-test：向所有 Webhook 发送一条测试载荷

技术栈：
- Typer：CLI 框架（基于 Click，支持类型注解自动生成帮助文档）
- Rich：终端美化输出（表格、颜色）

二开提示：
- gateway 命令是最完整的启动入口，包含了所有服务的编排逻辑
"""

import asyncio
import json
import mimetypes
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from warelay import __logo__, __version__

# 创建 Typer 应用实例（CLI 根命令）
app = typer.Typer(
    name="warelay",
    help=f"{__logo__} warelay - WhatsApp session relay",
    no_args_is_help=True,
)

console = Console()


def _setup_logging(verbose: bool) -> None:
    """配置 loguru 输出级别：--verbose 时为 DEBUG，否则为 INFO。"""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def version_callback(value: bool):
    """版本号回调：当用户传入 --version 参数时，打印版本号并退出。"""
    if value:
        console.print(f"{__logo__} warelay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """warelay CLI 根命令回调。处理全局选项（如 --version）。"""
    pass


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """
    初始化 warelay 配置。

    在 ~/.warelay/ 下创建默认配置文件 config.json，并打印后续操作指引。
    """
    from warelay.config.loader import get_config_path, save_config
    from warelay.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    save_config(Config())
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} warelay is ready!")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]store.url[/cyan] and [cyan]store.key[/cyan] in [cyan]~/.warelay/config.json[/cyan]")
    console.print("  2. Add webhook URLs under [cyan]webhooks.urls[/cyan]")
    console.print("  3. Start the bridge, then run: [cyan]warelay gateway[/cyan]")


# ============================================================================
# Service wiring
# ============================================================================


class _Services:
    """gateway / send 共用的服务装配结果。"""

    def __init__(self, config):
        from warelay.archive.telegram import TelegramArchive
        from warelay.bus.queue import DeliveryQueue
        from warelay.heartbeat.service import PresenceService, SelfPingService
        from warelay.relay.inbound import MessageRelay
        from warelay.relay.outbound import MessageSender
        from warelay.session.bridge import BridgeSessionClient, bridge_creds_factory
        from warelay.session.state import ReconnectPolicy
        from warelay.session.supervisor import ConnectionSupervisor
        from warelay.store.credentials import CredentialStore
        from warelay.store.records import ConnectionLogWriter, MessageRepository
        from warelay.store.rest import RestStoreClient
        from warelay.webhook.dispatcher import WebhookDispatcher

        self.client = RestStoreClient(config.store.url, config.store.key, timeout=config.store.timeout)
        self.store = CredentialStore(self.client, config.store.session_id)
        self.repository = MessageRepository(self.client)
        self.dispatcher = WebhookDispatcher(config.webhooks)
        self.archive = TelegramArchive(config.archive)
        self.queue = DeliveryQueue(pacing_delay=config.queue.pacing_delay)

        self.supervisor = ConnectionSupervisor(
            store=self.store,
            session_factory=lambda auth, callbacks: BridgeSessionClient(auth, callbacks, config.bridge),
            creds_factory=bridge_creds_factory(config.bridge),
            policy=ReconnectPolicy.from_config(config.reconnect),
            connection_log=ConnectionLogWriter(self.client),
        )
        self.relay = MessageRelay(
            session_provider=lambda: self.supervisor.session,
            repository=self.repository,
            dispatcher=self.dispatcher,
            archive=self.archive,
            max_media_size=config.archive.max_media_size,
        )
        self.supervisor.on_messages = self.relay.handle_upsert
        self.sender = MessageSender(
            self.supervisor, self.queue, self.repository, max_file_size=config.queue.max_file_size,
        )

        self.presence = PresenceService(
            session_provider=lambda: self.supervisor.session,
            interval_s=config.presence.interval,
            enabled=config.presence.enabled,
        )
        self.supervisor.subscribe(self.presence.on_lifecycle)
        self.self_ping = SelfPingService(
            url=config.self_ping.url,
            interval_s=config.self_ping.interval,
            enabled=config.self_ping.enabled,
        )

    async def close(self) -> None:
        """按依赖反序停止所有服务。"""
        self.self_ping.stop()
        self.presence.stop()
        await self.queue.stop()
        await self.supervisor.stop()
        await self.dispatcher.close()
        await self.archive.close()
        await self.client.close()


def _load_configured():
    """加载配置；远程存储未配置时退出。"""
    from warelay.config.loader import load_config

    config = load_config()
    if not config.store_configured:
        console.print("[red]Error: store.url and store.key must be configured[/red]")
        console.print("Run [cyan]warelay onboard[/cyan] and edit ~/.warelay/config.json")
        raise typer.Exit(1)
    return config


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动 warelay 转发服务（核心启动命令）。

    编排所有子服务：
    1. 加载配置，创建远程存储客户端与凭据存储
    2. 创建 Webhook 转发、媒体归档、出站队列
    3. 创建会话监督者，接入入站消息处理与在线状态保活
    4. 启动会话与自 ping，运行直到 Ctrl-C
    """
    _setup_logging(verbose)
    config = _load_configured()
    console.print(f"{__logo__} Starting warelay gateway (session: {config.store.session_id})...")

    if config.webhooks.urls:
        console.print(f"[green]✓[/green] Webhooks: {len(config.webhooks.urls)} configured")
    else:
        console.print("[yellow]Warning: No webhooks - messages will NOT be forwarded[/yellow]")
    if config.archive.enabled:
        console.print(f"[green]✓[/green] Media archive: Telegram chat {config.archive.chat_id}")
    console.print(f"[green]✓[/green] Presence: {'every ' + str(config.presence.interval) + 's' if config.presence.enabled else 'disabled'}")

    async def run():
        services = _Services(config)
        try:
            await services.supervisor.start()
            await services.self_ping.start()
            await asyncio.Event().wait()
        finally:
            console.print("\nShutting down...")
            await services.close()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


# ============================================================================
# Send
# ============================================================================


@app.command()
def send(
    target: str = typer.Argument(..., help="Target JID, e.g. 8613800000000@s.whatsapp.net"),
    message: str = typer.Option(None, "--message", "-m", help="Text (or caption for image/video)"),
    file: Path = typer.Option(None, "--file", "-f", help="File to send"),
    mimetype: str = typer.Option(None, "--mimetype", help="File MIME type (guessed from name if omitted)"),
    timeout: float = typer.Option(60.0, "--timeout", help="Seconds to wait for the session to connect"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """连接会话并发送一条消息，完成后断开。"""
    from warelay.bus.events import SendRequest
    from warelay.errors import RelayError

    _setup_logging(verbose)
    config = _load_configured()

    file_bytes = file.read_bytes() if file else None
    if file and not mimetype:
        mimetype = mimetypes.guess_type(file.name)[0]
    request = SendRequest(
        target=target,
        text=message,
        file_bytes=file_bytes,
        filename=file.name if file else None,
        mimetype=mimetype,
    )
    try:
        request.validate(config.queue.max_file_size)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    async def run() -> dict:
        services = _Services(config)
        connected = asyncio.Event()

        async def on_lifecycle(event) -> None:
            if event.kind == "connected":
                connected.set()

        services.supervisor.subscribe(on_lifecycle)
        try:
            await services.supervisor.start()
            await asyncio.wait_for(connected.wait(), timeout=timeout)
            return await services.sender.send(request)
        finally:
            await services.close()

    try:
        sent = asyncio.run(run())
    except asyncio.TimeoutError:
        console.print(f"[red]Session did not connect within {timeout}s[/red]")
        raise typer.Exit(1)
    except RelayError as e:
        console.print(f"[red]Send failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] Sent (message id: {(sent.get('key') or {}).get('id', 'unknown')})")


# ============================================================================
# Session / Webhook maintenance
# ============================================================================


@app.command("clear-session")
def clear_session(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """删除当前会话的全部持久化凭据。下次启动需要重新扫码配对。"""
    from warelay.store.credentials import CredentialStore
    from warelay.store.rest import RestStoreClient

    config = _load_configured()
    session_id = config.store.session_id
    if not yes and not typer.confirm(f"Delete all auth data for session '{session_id}'?"):
        raise typer.Exit()

    async def run() -> bool:
        client = RestStoreClient(config.store.url, config.store.key, timeout=config.store.timeout)
        try:
            return await CredentialStore(client, session_id).clear()
        finally:
            await client.close()

    if asyncio.run(run()):
        console.print(f"[green]✓[/green] Session '{session_id}' cleared")
    else:
        console.print(f"[red]Failed to clear session '{session_id}'[/red]")
        raise typer.Exit(1)


@app.command("webhook-test")
def webhook_test(
    payload: str = typer.Option(None, "--payload", "-p", help="JSON payload (default: a test event)"),
):
    """向所有已配置的 Webhook 发送一条测试载荷，并显示每个端点的结果。"""
    from warelay.config.loader import load_config
    from warelay.utils.helpers import timestamp
    from warelay.webhook.dispatcher import WebhookDispatcher

    config = load_config()
    if payload:
        try:
            body = json.loads(payload)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid JSON payload: {e}[/red]")
            raise typer.Exit(1)
    else:
        body = {"type": "webhook_test", "text": "warelay webhook test", "received_at": timestamp()}

    async def run():
        dispatcher = WebhookDispatcher(config.webhooks)
        try:
            return await dispatcher.dispatch(body)
        finally:
            await dispatcher.close()

    outcomes = asyncio.run(run())
    if not outcomes:
        console.print("[yellow]No webhooks configured[/yellow]")
        return

    table = Table(title="Webhook Test")
    table.add_column("Endpoint", style="cyan")
    table.add_column("Result")
    table.add_column("Attempts")
    for url, outcome in outcomes.items():
        result = "[green]✓ ok[/green]" if outcome.ok else f"[red]✗ {outcome.error}[/red]"
        table.add_row(url, result, str(outcome.attempts))
    console.print(table)


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """
    显示 warelay 配置状态。

    展示内容：配置文件、远程存储、桥接地址、Webhook、媒体归档、保活设置。
    """
    from warelay.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} warelay Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    def flag(value: bool) -> str:
        return "[green]✓[/green]" if value else "[dim]not set[/dim]"

    table = Table()
    table.add_column("Component", style="cyan")
    table.add_column("Configured")
    table.add_column("Details")
    table.add_row("Store", flag(config.store_configured), f"{config.store.url or '-'} (session: {config.store.session_id})")
    table.add_row("Bridge", flag(bool(config.bridge.url)), config.bridge.url)
    table.add_row("Webhooks", flag(bool(config.webhooks.urls)), f"{len(config.webhooks.urls)} endpoint(s), {config.webhooks.retries} attempts")
    table.add_row("Archive", flag(config.archive.enabled and bool(config.archive.bot_token)), config.archive.chat_id or "-")
    table.add_row("Presence", flag(config.presence.enabled), f"every {config.presence.interval}s")
    table.add_row("Self-ping", flag(config.self_ping.enabled and bool(config.self_ping.url)), config.self_ping.url or "-")
    console.print(table)


if __name__ == "__main__":
    app()

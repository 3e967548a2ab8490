"""
CLI 命令模块 - sessionmux 的命令行命令定义。

命令列表：
- onboard：写入默认配置文件
- status：查看配置、存储与传输层设置
- sessions：列出持久化的会话记录
- gateway：启动编排服务（Bridge 传输层 + 全部组件），运行直到 Ctrl+C

技术栈：
- Typer：CLI 框架
- Rich：终端表格与彩色输出
"""

import asyncio
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from sessionmux import __logo__, __version__

app = typer.Typer(
    name="sessionmux",
    help=f"{__logo__} sessionmux - Multi-session messaging orchestrator",
    no_args_is_help=True,
)

console = Console()


def _configure_logging(verbose: bool) -> None:
    """重新配置 loguru 输出级别：默认 INFO，--verbose 时 DEBUG。"""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} sessionmux v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-V", callback=version_callback, is_eager=True
    ),
):
    """sessionmux CLI 根命令回调。"""
    pass


# ============================================================================
# Onboard / Status
# ============================================================================


@app.command()
def onboard():
    """在 ~/.sessionmux/ 下创建默认配置文件 config.json。"""
    from sessionmux.config.loader import get_config_path, save_config
    from sessionmux.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} sessionmux is ready!")
    console.print("\nNext steps:")
    console.print("  1. Start the WhatsApp bridge and set [cyan]transport.bridgeUrl[/cyan]")
    console.print("  2. List sessions to start in [cyan]service.autostartSessions[/cyan]")
    console.print("  3. Run: [cyan]sessionmux gateway[/cyan]")


@app.command()
def status():
    """显示配置文件、记录存储与传输层设置。"""
    from sessionmux.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} sessionmux Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    store_path = config.store_path
    if config.store.kind == "json":
        console.print(f"Store: json {store_path} {'[green]✓[/green]' if store_path.exists() else '[dim]not created[/dim]'}")
    else:
        console.print(f"Store: {config.store.kind}")

    console.print(f"Bridge: {config.transport.bridge_url}")
    console.print(f"Credentials: {config.sessions_path}")
    console.print(f"Max sessions: {config.connection.max_sessions}")
    console.print(f"Rate limit: {config.sender.max_messages_per_minute} msg/min per session")
    console.print(f"Responder: {config.responder.kind}"
                  + (f" ({config.responder.model})" if config.responder.kind == "litellm" else ""))
    console.print(f"Auto-responses: {'[green]on[/green]' if config.listener.ai_enabled else '[dim]off[/dim]'}")


@app.command()
def sessions():
    """列出持久化的会话记录。"""
    from sessionmux.config.loader import load_config
    from sessionmux.session.registry import SessionRegistry
    from sessionmux.store import create_store

    config = load_config()
    store = create_store(config.store.kind, config.store_path)
    registry = SessionRegistry(store)
    asyncio.run(registry.initialize())

    records = registry.list_records()
    if not records:
        console.print("No session records.")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Last used")
    table.add_column("Sent", justify="right")
    table.add_column("Received", justify="right")
    table.add_column("Errors", justify="right")

    for record in records:
        stats = record["stats"]
        table.add_row(
            record["session_id"],
            record["status"],
            record["created_at"][:19],
            record["last_used"][:19],
            str(stats["total_messages_sent"]),
            str(stats["total_messages_received"]),
            str(stats["errors"]),
        )

    console.print(table)


# ============================================================================
# Gateway
# ============================================================================


@app.command()
def gateway(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    启动编排服务。

    执行流程：
    1. 加载配置，构造 OrchestrationFacade（Bridge 传输层）
    2. initialize() + start()
    3. 为 service.autostart_sessions 中的每个会话创建连接（后台进行，等待扫码）
    4. 配对码生成时在终端打印 ASCII 图
    5. Ctrl+C 时关闭全部会话并销毁组件
    """
    from sessionmux.bus.events import Notification
    from sessionmux.config.loader import load_config
    from sessionmux.service.facade import OrchestrationFacade

    _configure_logging(verbose)
    config = load_config()
    facade = OrchestrationFacade(config)

    console.print(f"{__logo__} Starting sessionmux gateway (bridge {config.transport.bridge_url})...")

    async def on_pairing(notification: Notification) -> None:
        code = facade.get_pairing_code(notification.session_id, "ascii")
        if code and code["data"]:
            console.print(f"\n[cyan]Scan to pair session {notification.session_id}:[/cyan]")
            console.print(code["data"])

    async def create(session_id: str) -> None:
        try:
            await facade.create_session(session_id)
            console.print(f"[green]✓[/green] Session {session_id} connected")
        except Exception as e:
            console.print(f"[red]✗[/red] Session {session_id}: {e}")

    async def run():
        await facade.initialize()
        await facade.start()
        facade.bus.subscribe("pairing_generated", on_pairing)

        if config.service.autostart_sessions:
            console.print(f"[green]✓[/green] Autostart: {', '.join(config.service.autostart_sessions)}")
        else:
            console.print("[yellow]Warning: No autostart sessions configured[/yellow]")

        tasks = [asyncio.create_task(create(sid)) for sid in config.service.autostart_sessions]
        try:
            await asyncio.Event().wait()
        finally:
            for task in tasks:
                task.cancel()
            console.print("\nShutting down...")
            await facade.destroy()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()

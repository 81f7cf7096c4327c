# /kbchat/app.py
"""
Terminal client for the knowledge-base chat service.
Plain input is sent as a chat turn; slash commands manage uploads and the
knowledge base that scopes the assistant's file search.
"""
import asyncio
import shlex
import sys

from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table, box

from .api_client import ChatApiClient
from .config import API_BASE_URL, LOCAL_STORE_PATH, MAX_UPLOAD_FILES, MAX_UPLOAD_SIZE_MB, console
from .conversation import ChatSession
from .events import KnowledgeBaseEventBus
from .knowledge_base import KnowledgeBaseRegistry
from .observability import console_logging_enabled, get_logger, set_console_logging
from .panels import KnowledgeBasePanel
from .storage_provider import SqliteKeyValueStorage
from .uploads import UploadBatch, UploadStatus, format_bytes, status_label

logger = get_logger(__name__)

HELP_TEXT = """\
[bold]Commands[/bold]
  [cyan]/upload <path> \\[path ...][/cyan]  upload files to the Knowledge Base
  [cyan]/stores[/cyan]                    list Knowledge Base files
  [cyan]/use <n>[/cyan]                   toggle file n as the chat's knowledge base
  [cyan]/unselect[/cyan]                  chat without a knowledge base
  [cyan]/clear-kb[/cyan]                  remove every file from the Knowledge Base
  [cyan]/new[/cyan]                       start a new conversation
  [cyan]/verbose \\[on|off][/cyan]          show warnings and errors from the log in the terminal
  [cyan]/help[/cyan]                      show this help
  [cyan]/quit[/cyan]                      exit"""

_STATUS_STYLES = {
    UploadStatus.QUEUED: "dim",
    UploadStatus.UPLOADING_TO_SERVER: "blue",
    UploadStatus.PENDING_OPENAI: "blue",
    UploadStatus.COMPLETED_OPENAI: "green",
    UploadStatus.FAILED: "red",
}


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    console.print(Panel(
        "[bold magenta]Knowledge-Base Chat[/bold magenta]",
        subtitle=f"[cyan]{API_BASE_URL}[/cyan]",
        expand=False,
    ))
    console.print(
        f"[green]Upload up to {MAX_UPLOAD_FILES} files, {MAX_UPLOAD_SIZE_MB}MB each, "
        "then chat with them. Type /help for commands.[/green]"
    )


def render_upload_table(batch: UploadBatch) -> Table:
    table = Table(title=f"Files to Upload ({len(batch.tasks)})", box=box.SIMPLE)
    table.add_column("File", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Status")
    for task in batch.tasks:
        style = _STATUS_STYLES.get(task.status, "")
        table.add_row(task.file_name, format_bytes(task.size), f"[{style}]{status_label(task)}[/{style}]")
    return table


def render_reply(session: ChatSession, content: str):
    scope = next((store.name for store in session.available_stores() if store.is_active), None)
    subtitle = f"[dim]grounded in {scope}[/dim]" if scope else None
    console.print(Panel(Markdown(content), title="Assistant", subtitle=subtitle, border_style="magenta"))


# --- Command Handlers ---

async def handle_upload(args: list[str], client: ChatApiClient, registry: KnowledgeBaseRegistry):
    if not args:
        console.print("[yellow]Usage: /upload <path> \\[path ...][/yellow]")
        return
    batch = UploadBatch(client, registry)
    for error in batch.stage(args):
        console.print(f"[bold red]{error}[/bold red]")
    if not batch.tasks:
        return
    with console.status("[bold blue]Adding files to Knowledge Base...[/bold blue]"):
        summary = await batch.run()
    console.print(render_upload_table(batch))
    style = "yellow" if summary.failed else "green"
    console.print(f"[{style}]{summary.message}[/{style}]")


async def handle_clear_knowledge_base(client: ChatApiClient, registry: KnowledgeBaseRegistry):
    entries = registry.load_all()
    if entries:
        console.print(f"[blue]Attempting to clear {len(entries)} file(s) from Knowledge Base...[/blue]")
    with console.status("[bold red]Clearing Knowledge Base...[/bold red]"):
        report = await registry.clear_all(entries, client.delete_file)
    if not report.outcomes:
        console.print(f"[dim]{report.message}[/dim]")
    elif report.failed:
        console.print(f"[bold red]{report.message}[/bold red]")
    else:
        console.print(f"[green]{report.message}[/green]")


def handle_use(args: list[str], panel: KnowledgeBasePanel):
    panel.refresh()
    if len(args) != 1 or not args[0].isdigit():
        console.print("[yellow]Usage: /use <n>  (see /stores for numbers)[/yellow]")
        return
    try:
        entry = panel.select_index(int(args[0]))
    except IndexError as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        return
    state = "selected" if panel.get_selected() == entry.vector_store_id else "deselected"
    console.print(f"[green]Knowledge base {state}: {entry.name}[/green]")


def handle_verbose(args: list[str]):
    if args and args[0] not in ("on", "off"):
        console.print("[yellow]Usage: /verbose \\[on|off][/yellow]")
        return
    enabled = args[0] == "on" if args else not console_logging_enabled()
    set_console_logging(enabled, console=console)
    console.print(f"[green]Console logging {'on' if enabled else 'off'}.[/green]")


def handle_stores(panel: KnowledgeBasePanel):
    panel.refresh()
    if not panel.stores:
        console.print("[yellow]No knowledge bases found. Upload files to create one.[/yellow]")
        return
    console.print(panel.render())


async def handle_chat(session: ChatSession, text: str):
    with console.status("[bold cyan]Thinking...[/bold cyan]"):
        reply = await session.send(text)
    render_reply(session, reply.content)


async def run_session(client: ChatApiClient, registry: KnowledgeBaseRegistry, bus: KnowledgeBaseEventBus):
    session = ChatSession(client, registry, bus)
    panel = KnowledgeBasePanel(
        registry,
        bus,
        get_selected=lambda: session.selected_store_id,
        on_selection_change=session.set_selected,
    )
    try:
        while True:
            raw = await asyncio.to_thread(Prompt.ask, "[bold cyan]You[/bold cyan]")
            text = (raw or "").strip()
            if not text:
                continue
            if not text.startswith("/"):
                await handle_chat(session, text)
                continue

            try:
                command, *args = shlex.split(text)
            except ValueError as exc:
                console.print(f"[bold red]Could not parse command: {exc}[/bold red]")
                continue

            logger.info("cli_command", command=command, arg_count=len(args))
            if command in ("/quit", "/exit"):
                break
            elif command == "/help":
                console.print(HELP_TEXT)
            elif command == "/upload":
                await handle_upload(args, client, registry)
            elif command == "/stores":
                handle_stores(panel)
            elif command == "/use":
                handle_use(args, panel)
            elif command == "/unselect":
                panel.clear_selection()
                console.print("[green]Knowledge base selection cleared.[/green]")
            elif command == "/clear-kb":
                await handle_clear_knowledge_base(client, registry)
            elif command == "/verbose":
                handle_verbose(args)
            elif command == "/new":
                session.reset()
                console.print("[green]Started a new conversation.[/green]")
            else:
                console.print(f"[yellow]Unknown command {command}. Type /help.[/yellow]")
    finally:
        panel.close()
        session.close()


async def _main_async():
    storage = SqliteKeyValueStorage(LOCAL_STORE_PATH)
    bus = KnowledgeBaseEventBus()
    registry = KnowledgeBaseRegistry(storage, bus)
    try:
        async with ChatApiClient() as client:
            await run_session(client, registry, bus)
    finally:
        storage.close()


def main():
    """Main application loop."""
    display_welcome_banner()
    try:
        asyncio.run(_main_async())
    except (KeyboardInterrupt, EOFError):
        pass
    console.print("\n[bold magenta]Goodbye![/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()

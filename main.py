"""
Editor Agent - terminal front end for the agent orchestration core.
Console rendering built with Rich.
"""

import asyncio
import argparse
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from backend import LocalBackend
from bedrock_service import BedrockService, BedrockError
from config import app_config, get_credentials_info, get_model_name, model_config
from thread_storage import ThreadStorage
from tools import APPROVAL_CATEGORIES, READ_TOOLS
from agent import (
    AgentEvent, AgentOrchestrator, ContextItem, ThreadStore, ToolExecutionEngine, get_message_text,
)
from agent.models import AssistantMessage, UserMessage

# Configure logging to file so it doesn't interfere with the console
logging.basicConfig(
    filename=app_config.log_file,
    level=getattr(logging, app_config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

HELP = """[bold]Commands[/bold]
  /help                 show this help
  /new                  start a new thread
  /threads              list threads
  /switch N             switch to thread N
  /file PATH            attach a file as context for the next message
  /folder PATH          attach a folder tree as context
  /web QUERY            attach web search results as context
  /git                  attach git status as context
  /changes              list pending file changes
  /accept               accept all pending changes
  /undo [PATH]          undo one pending change, or all of them
  /checkpoints          list message checkpoints
  /restore N            restore files and thread to checkpoint N
  /auto CATEGORY on|off auto-approve edits, terminal or dangerous tools
  /quit                 exit
Press Ctrl+C while the agent is working to abort the turn."""


class ConsoleApp:
    """Line-oriented REPL over an AgentOrchestrator"""

    def __init__(self, working_directory: str, model_id: Optional[str] = None):
        self.console = Console()
        self.working_directory = working_directory
        self.model_id = model_id or model_config.model_id

        self.backend = LocalBackend(working_directory)
        self.storage = ThreadStorage(working_directory, os.path.join(app_config.storage_dir, "threads"))
        self.store = ThreadStore(backend=self.backend, storage=self.storage)
        self.engine = ToolExecutionEngine(
            self.store,
            self.backend,
            request_approval=self._request_approval,
            on_event=self._on_event,
        )
        self.service = BedrockService(model_id=self.model_id)
        self.agent = AgentOrchestrator(self.store, self.engine, self.service, on_event=self._on_event)
        self._streaming_text = False

    # ============================================================
    # Rendering
    # ============================================================

    def _end_text(self) -> None:
        if self._streaming_text:
            self.console.print()
            self._streaming_text = False

    async def _on_event(self, event: AgentEvent) -> None:
        data = event.data or {}

        if event.type == "text":
            self.console.print(event.content, end="", markup=False, highlight=False)
            self._streaming_text = True

        elif event.type == "tool_call":
            self._end_text()
            name = data.get("tool_name", "?")
            color = "#3fb950" if name in READ_TOOLS else "#f0883e"
            self.console.print(Text.from_markup(f"   [{color}]• {rich_escape(name)}[/{color}]"))

        elif event.type == "tool_pending":
            self._end_text()
            self.console.print(Text.from_markup(
                f"   [#e3b341]? {rich_escape(event.content)}[/#e3b341] "
                f"[#6e7681]({rich_escape(str(data.get('approval_type')))})[/#6e7681]"
            ))

        elif event.type == "tool_result":
            self._end_text()
            success = data.get("success", False)
            ok = "✓" if success else "✗"
            style = "#6e7681" if success else "#f85149"
            lines = event.content.split("\n")
            first = lines[0][:100] if lines else ""
            suffix = f"  ({len(lines)} lines)" if len(lines) > 1 else ""
            self.console.print(Text(f"   {ok} {first}{suffix}", style=style))

        elif event.type == "stream_retry":
            self._end_text()
            self.console.print(Text.from_markup(
                f"   [#58a6ff]↻ retry {data.get('attempt')}/{data.get('max_retries')}: "
                f"{rich_escape(event.content)}[/#58a6ff]"
            ))

        elif event.type == "warning":
            self._end_text()
            self.console.print(Text.from_markup(f"   [#e3b341]⚠ {rich_escape(event.content)}[/#e3b341]"))

        elif event.type == "error":
            self._end_text()
            self.console.print(Text.from_markup(f"\n   [bold #f85149]✗ {rich_escape(event.content)}[/bold #f85149]"))

        elif event.type == "done":
            self._end_text()

    async def _request_approval(self, tool_name: str, description: str, inputs: Dict[str, Any]) -> bool:
        """Blocking y/n prompt, run off the event loop so abort() still works."""
        self._end_text()
        if tool_name == "run_command":
            self.console.print(Text.from_markup(f"   [bold #e3b341]$ {rich_escape(inputs.get('command', ''))}[/bold #e3b341]"))
        elif tool_name == "write_file":
            preview = (inputs.get("content") or "")[:400]
            self.console.print(Text(preview, style="#6e7681"))
        elif tool_name == "edit_file":
            self.console.print(Text((inputs.get("search_replace_blocks") or json.dumps(inputs))[:600], style="#6e7681"))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: Confirm.ask(f"   Allow: {description}?", default=False))

    # ============================================================
    # Commands
    # ============================================================

    def _print_threads(self) -> None:
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Thread")
        table.add_column("Messages", justify="right")
        for idx, thread in enumerate(self.store.threads.values(), start=1):
            first_user = next((m for m in thread.messages if isinstance(m, UserMessage)), None)
            title = get_message_text(first_user.content)[:50] if first_user else "(empty)"
            marker = "*" if thread.id == self.store.current_thread_id else ""
            table.add_row(f"{marker}{idx}", title, str(len(thread.messages)))
        self.console.print(table)

    def _print_changes(self) -> None:
        if not self.store.pending_changes:
            self.console.print("[#6e7681]No pending changes[/#6e7681]")
            return
        for change in self.store.pending_changes:
            rel = os.path.relpath(change.file_path, self.working_directory)
            self.console.print(
                f"   [#3fb950]+{change.lines_added}[/#3fb950] [#f85149]-{change.lines_removed}[/#f85149] "
                f"{rich_escape(rel)} [#6e7681]({change.tool_name})[/#6e7681]"
            )

    def _print_checkpoints(self) -> None:
        for idx, cp in enumerate(self.store.message_checkpoints, start=1):
            self.console.print(f"   [#58a6ff]{idx:>3}[/#58a6ff]  {rich_escape(cp.description)} "
                               f"[#6e7681]({len(cp.file_snapshots)} files)[/#6e7681]")

    async def _handle_command(self, line: str) -> bool:
        """Returns False when the app should exit."""
        cmd, _, arg = line.partition(" ")
        arg = arg.strip()

        if cmd in ("/quit", "/exit"):
            return False
        if cmd == "/help":
            self.console.print(HELP)
        elif cmd == "/new":
            self.store.create_thread()
            self.console.print("[#3fb950]New thread[/#3fb950]")
        elif cmd == "/threads":
            self._print_threads()
        elif cmd == "/switch":
            ids = list(self.store.threads)
            if arg.isdigit() and 1 <= int(arg) <= len(ids):
                self.store.switch_thread(ids[int(arg) - 1])
            else:
                self.console.print("[#f85149]Usage: /switch N[/#f85149]")
        elif cmd == "/file" and arg:
            self.store.add_context_item(ContextItem(type="File", uri=arg))
        elif cmd == "/folder" and arg:
            self.store.add_context_item(ContextItem(type="Folder", uri=arg))
        elif cmd == "/web" and arg:
            self.store.add_context_item(ContextItem(type="Web", query=arg))
        elif cmd == "/git":
            self.store.add_context_item(ContextItem(type="Git"))
        elif cmd == "/changes":
            self._print_changes()
        elif cmd == "/accept":
            self.store.accept_all_changes()
            self.console.print("[#3fb950]Changes accepted[/#3fb950]")
        elif cmd == "/undo":
            if arg:
                ok = await self.store.undo_change(self.backend.resolve_path(arg))
                self.console.print("[#3fb950]Reverted[/#3fb950]" if ok else "[#f85149]Nothing to undo[/#f85149]")
            else:
                result = await self.store.undo_all_changes()
                self.console.print(f"Reverted {len(result.restored_files)} file(s)")
                for err in result.errors:
                    self.console.print(f"   [#f85149]{rich_escape(err)}[/#f85149]")
        elif cmd == "/checkpoints":
            self._print_checkpoints()
        elif cmd == "/restore":
            checkpoints = self.store.message_checkpoints
            if not (arg.isdigit() and 1 <= int(arg) <= len(checkpoints)):
                self.console.print("[#f85149]Usage: /restore N[/#f85149]")
            else:
                result = await self.store.restore_to_checkpoint(checkpoints[int(arg) - 1].id)
                self.console.print(f"Restored {len(result.restored_files)} file(s)")
                for err in result.errors:
                    self.console.print(f"   [#f85149]{rich_escape(err)}[/#f85149]")
        elif cmd == "/auto":
            category, _, value = arg.partition(" ")
            if category not in APPROVAL_CATEGORIES or value not in ("on", "off"):
                self.console.print(f"[#f85149]Usage: /auto {{{'|'.join(APPROVAL_CATEGORIES)}}} on|off[/#f85149]")
            else:
                self.store.set_auto_approve(category, value == "on")
        else:
            self.console.print(f"[#f85149]Unknown command: {rich_escape(cmd)}[/#f85149]")
        return True

    async def _run_turn(self, text: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.agent.abort)
        except NotImplementedError:
            pass  # Windows: Ctrl+C raises KeyboardInterrupt instead
        try:
            await self.agent.send_message(text, model=self.model_id, workspace_path=self.working_directory)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

        last = self.store.messages[-1] if self.store.messages else None
        if isinstance(last, AssistantMessage) and self.store.has_pending_changes:
            self.console.print(f"[#6e7681]{len(self.store.pending_changes)} pending change(s). "
                               f"/accept or /undo[/#6e7681]")

    async def run(self) -> None:
        self.console.print(Text.from_markup(
            f"[bold]{app_config.title}[/bold]  [#6e7681]{rich_escape(get_model_name(self.model_id))} · "
            f"{rich_escape(self.working_directory)}[/#6e7681]"
        ))
        self.console.print(f"[#6e7681]{rich_escape(get_credentials_info())} · /help for commands[/#6e7681]\n")

        loop = asyncio.get_running_loop()
        while True:
            try:
                line = await loop.run_in_executor(None, lambda: self.console.input("[bold #f0f6fc]❯ [/bold #f0f6fc]"))
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await self._handle_command(line):
                    break
                continue
            await self._run_turn(line)

        self.store.flush()


# ============================================================
# Entry Point
# ============================================================

def main():
    parser = argparse.ArgumentParser(
        description="Editor Agent - tool-using coding agent on Amazon Bedrock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                    Run in current directory
  python main.py -d ~/my-project    Run in a specific project directory
  python main.py --check            Test the Bedrock connection and exit
        """,
    )
    parser.add_argument(
        "-d", "--directory",
        default=app_config.working_directory,
        help="Working directory for the agent (default: current directory)",
    )
    parser.add_argument("-m", "--model", default=None, help="Bedrock model id")
    parser.add_argument("--check", action="store_true", help="Test the Bedrock connection and exit")

    args = parser.parse_args()

    working_dir = os.path.abspath(os.path.expanduser(args.directory))
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    try:
        app = ConsoleApp(working_directory=working_dir, model_id=args.model)
    except BedrockError as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.check:
        ok, message = app.service.test_connection()
        print(message)
        sys.exit(0 if ok else 1)

    asyncio.run(app.run())


if __name__ == "__main__":
    main()

"""CLI entry point for aichat-tabs."""

import asyncio
import logging

import click

from .backends import HttpBackend
from .chat import ChatClient
from .config import get_default_model
from .core import ChatMessage
from .export import session_to_json, session_to_markdown
from .provider import TransportError
from .registry import SessionRegistry, UnknownSessionError


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool):
    """Chat with an AI backend across several sessions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--url", default=None, help="Backend URL (default: $AICHAT_TABS_BACKEND_URL).")
def sessions(url: str | None):
    """List stored sessions, most recently updated first."""

    async def run():
        async with HttpBackend(base_url=url) as backend:
            return await backend.list_sessions()

    try:
        rows = asyncio.run(run())
    except TransportError as e:
        raise click.ClickException(str(e))

    for s in sorted(rows, key=lambda s: s.updated_at, reverse=True):
        click.echo(f"{s.id}  {s.updated_at:%Y-%m-%d %H:%M}  {s.message_count:>4}  {s.title}")


@main.command()
@click.argument("prompt")
@click.option("--session", "session_id", default=None, help="Continue this session instead of starting a new one.")
@click.option("--model", default=None, help="Model name (default: $AICHAT_TABS_MODEL).")
@click.option("--tools/--no-tools", default=True, help="Let the model call tools.")
@click.option("--url", default=None, help="Backend URL (default: $AICHAT_TABS_BACKEND_URL).")
def chat(prompt: str, session_id: str | None, model: str | None, tools: bool, url: str | None):
    """Send PROMPT and stream the reply to stdout."""
    try:
        reply = asyncio.run(_chat(prompt, session_id, model or get_default_model(), tools, url))
    except (TransportError, UnknownSessionError) as e:
        raise click.ClickException(str(e))

    if reply is None:
        raise click.ClickException("Nothing was sent")
    if reply.content.startswith("Error: "):
        raise click.ClickException(reply.content)


async def _chat(
    prompt: str, session_id: str | None, model: str, tools: bool, url: str | None
) -> ChatMessage | None:
    registry = SessionRegistry()
    async with HttpBackend(base_url=url) as backend:
        client = ChatClient(registry, backend, backend, prompts=backend, model=model, tools_enabled=tools)
        printer = _StreamPrinter()
        client.cache.subscribe(printer)

        if session_id:
            await client.load_sessions()
            registry.open_tab(session_id)
            await client.cache.wait_hydrated()
        else:
            await client.new_session()

        printer.start(len(client.cache.messages))
        reply = await client.send(prompt)
        click.echo()
        await client.drain()
        return reply


class _StreamPrinter:
    """Echo the growing assistant reply and its tool calls."""

    def __init__(self):
        self._skip = None
        self._printed = ""
        self._tools: set[tuple[str, str]] = set()

    def start(self, existing: int) -> None:
        self._skip = existing

    def __call__(self, messages: list[ChatMessage], loading: bool) -> None:
        if self._skip is None or len(messages) <= self._skip:
            return
        last = messages[-1]
        if last.role != "assistant":
            return

        for ti in last.tool_interactions:
            if (ti.id, ti.status) not in self._tools:
                self._tools.add((ti.id, ti.status))
                click.echo(f"\n[{ti.tool_name}: {ti.status}]", err=True)

        if last.content.startswith(self._printed):
            click.echo(last.content[len(self._printed):], nl=False)
        else:
            click.echo(f"\n{last.content}", nl=False)
        self._printed = last.content


@main.command()
@click.argument("session_id")
@click.option("--format", "fmt", type=click.Choice(["md", "json"]), default="md", help="Export format.")
@click.option("--url", default=None, help="Backend URL (default: $AICHAT_TABS_BACKEND_URL).")
def export(session_id: str, fmt: str, url: str | None):
    """Print a session transcript as Markdown or JSON."""

    async def run():
        async with HttpBackend(base_url=url) as backend:
            rows = await backend.list_sessions()
            detail = await backend.get_session_detail(session_id)
            return rows, detail

    try:
        rows, detail = asyncio.run(run())
    except TransportError as e:
        raise click.ClickException(str(e))

    session = next((s for s in rows if s.id == session_id), None)
    if session is None:
        raise click.ClickException(f"Session not found: {session_id}")

    if fmt == "json":
        click.echo(session_to_json(session, detail.messages))
    else:
        click.echo(session_to_markdown(session, detail.messages))

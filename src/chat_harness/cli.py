"""Command-line interface: inspect backends, list models, ask one question."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from chat_harness.config import DEFAULT_BACKENDS, HarnessConfig, load_config
from chat_harness.errors import HarnessError
from chat_harness.service import ChatService
from chat_harness.types import UnifiedResponse

console = Console()
err_console = Console(stderr=True)


def _yes(flag: bool) -> str:
    return "[green]yes[/green]" if flag else "[dim]no[/dim]"


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_harness.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Chat with any configured LLM backend."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    ctx.obj = load_config(config_path)


@main.command()
@click.pass_obj
def backends(config: HarnessConfig) -> None:
    """Show every known backend and its capabilities."""
    table = Table(title="Backends", show_lines=False, border_style="dim")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Base URL", style="dim")
    table.add_column("Tools")
    table.add_column("Vision")
    table.add_column("Stream")
    table.add_column("Key")
    for backend_id in DEFAULT_BACKENDS:
        desc = config.descriptor_for(backend_id)
        caps = desc.capabilities
        tools = caps.tool_format if caps.supports_tools else "[dim]-[/dim]"
        marker = " *" if backend_id == config.default_backend else ""
        table.add_row(
            backend_id + marker, desc.name, desc.base_url or "-",
            tools, _yes(caps.supports_vision), _yes(caps.supports_streaming),
            _yes(desc.requires_api_key),
        )
    console.print(table)


@main.command()
@click.argument("backend")
@click.option("--api-key", default=None, help="API key for model discovery")
@click.option("--base-url", default=None, help="Override the backend base URL")
@click.pass_obj
def models(config: HarnessConfig, backend: str, api_key: str | None, base_url: str | None) -> None:
    """List the models BACKEND offers."""

    async def run() -> list[str]:
        service = ChatService(config)
        try:
            return await service.list_models(backend, api_key, base_url)
        finally:
            await service.aclose()

    try:
        names = asyncio.run(run())
    except HarnessError as exc:
        err_console.print(f"[red]{exc}[/red]")
        sys.exit(1)
    for name in names:
        console.print(name)


@main.command()
@click.argument("backend")
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model id")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
@click.option("--no-stream", is_flag=True, help="Wait for the full answer")
@click.pass_obj
def ask(
    config: HarnessConfig,
    backend: str,
    prompt: str,
    model: str | None,
    system_prompt: str | None,
    no_stream: bool,
) -> None:
    """Send PROMPT to BACKEND and print the answer."""

    def on_token(text: str) -> None:
        console.print(text, end="", markup=False, highlight=False)

    async def run() -> UnifiedResponse:
        service = ChatService(config)
        try:
            settings = service.settings_for(
                backend, model=model, system_prompt=system_prompt,
                stream=not no_stream, tool_calling=False,
            )
            return await service.send(
                backend, prompt, [], None if no_stream else on_token, settings=settings,
            )
        finally:
            await service.aclose()

    try:
        response = asyncio.run(run())
    except HarnessError as exc:
        err_console.print(f"\n[red]{exc}[/red]")
        sys.exit(1)

    if no_stream:
        console.print(response.content, markup=False, highlight=False)
    else:
        console.print()
    for warning in response.warnings:
        err_console.print(f"[yellow]{warning}[/yellow]")
    if response.usage:
        approx = "~" if response.usage.estimated else ""
        console.print(
            f"[dim]{approx}{response.usage.total_tokens} tokens "
            f"({response.usage.prompt_tokens} in / {response.usage.completion_tokens} out)[/dim]"
        )


if __name__ == "__main__":
    main()

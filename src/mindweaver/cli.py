#!/usr/bin/env python3
"""
mw: CLI for mindweaver

Usage:
    mw connect "Compound interest.md"         # Print related notes
    mw connect notes/Budget.md --write        # Append the section to the note
    mw tags "Trip planning.md"                # Suggest tags from the vault vocabulary
    mw reindex                                # Rebuild the concepts index
    mw exclude add Templates                  # Skip a folder when finding connections
"""

from __future__ import annotations

import asyncio
import difflib
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn

import click
from click.exceptions import ClickException, UsageError

from . import __version__ as MINDWEAVER_VERSION
from .errors import ErrorCode, WeaverError, format_error_json
from .models import StatusMessage


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def _handle_error(ctx: click.Context, error: Exception, exit_code: int = 1) -> NoReturn:
    """Report an error once, as JSON with --json-errors or as a plain line, and exit."""
    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False

    if isinstance(error, WeaverError):
        if json_errors:
            click.echo(error.to_json(), err=True)
        else:
            click.echo(f"Error: {error.message}", err=True)
    else:
        if json_errors:
            click.echo(format_error_json(ErrorCode.INTERNAL_ERROR.value, str(error)), err=True)
        else:
            click.echo(f"Error: {error}", err=True)

    sys.exit(exit_code)


def get_error_code_for_exception(exc: Exception) -> str:
    """Map Click exceptions to error codes."""
    if isinstance(exc, click.BadParameter):
        return "INVALID_ARGUMENT"
    elif isinstance(exc, click.MissingParameter):
        return "MISSING_ARGUMENT"
    elif isinstance(exc, click.NoSuchOption):
        return "UNKNOWN_OPTION"
    elif isinstance(exc, UsageError):
        return "USAGE_ERROR"
    elif isinstance(exc, ClickException):
        return "CLI_ERROR"
    return "UNKNOWN_ERROR"


# ─────────────────────────────────────────────────────────────────────────────
# JSON Error Handling
# ─────────────────────────────────────────────────────────────────────────────


class JsonErrorGroup(click.Group):
    """Click group that formats usage errors as JSON when --json-errors is set.

    Also suggests the closest command name for typos.
    """

    def resolve_command(self, ctx, args):
        try:
            return super().resolve_command(ctx, args)
        except UsageError as e:
            cmd_name = args[0] if args else ""
            if cmd_name and "No such command" in str(e):
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=1, cutoff=0.6
                )
                if matches:
                    raise UsageError(f"No such command '{cmd_name}'. Did you mean '{matches[0]}'?")
            raise

    def main(
        self,
        args: Sequence[str] | None = None,
        prog_name: str | None = None,
        complete_var: str | None = None,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        """Catch parsing errors (bad option values, missing arguments) as JSON.

        --json-errors is accepted anywhere on the command line and moved to
        the front so it is parsed as the global flag.
        """
        argv = list(args) if args is not None else list(sys.argv[1:])
        if "--json-errors" not in argv:
            return super().main(args, prog_name, complete_var, standalone_mode, **extra)

        argv = [a for a in argv if a != "--json-errors"]
        argv.insert(0, "--json-errors")

        try:
            return super().main(argv, prog_name, complete_var, standalone_mode=False, **extra)
        except ClickException as e:
            code = get_error_code_for_exception(e)
            click.echo(format_error_json(code, e.format_message()), err=True)
            raise SystemExit(1)
        except SystemExit:
            raise
        except Exception as e:
            click.echo(format_error_json(ErrorCode.INTERNAL_ERROR.value, str(e)), err=True)
            raise SystemExit(1)


# ─────────────────────────────────────────────────────────────────────────────
# Shared helpers
# ─────────────────────────────────────────────────────────────────────────────


def _vault_root(ctx: click.Context) -> Path:
    """Vault from --vault, else MINDWEAVER_VAULT or upward discovery."""
    from .config import ConfigurationError, get_vault_root

    explicit = ctx.obj.get("vault") if ctx.obj else None
    try:
        if explicit:
            root = Path(explicit)
            if not root.is_dir():
                raise ConfigurationError(f"Vault directory does not exist: {explicit}")
            return root
        return get_vault_root()
    except ConfigurationError as exc:
        _handle_error(ctx, exc)


def _load_config(ctx: click.Context, root: Path):
    from .config import ConfigurationError, load_weaver_config

    try:
        return load_weaver_config(root)
    except ConfigurationError as exc:
        _handle_error(ctx, exc)


def _is_quiet(ctx: click.Context) -> bool:
    return bool(ctx.obj.get("quiet")) if ctx.obj else False


def _status_printer(ctx: click.Context):
    """Print transient status to stderr; errors are reported once by _handle_error."""
    quiet = _is_quiet(ctx)

    def show(status: StatusMessage) -> None:
        if status.kind == "error" or quiet:
            return
        click.echo(status.message, err=True)

    return show


def _make_limiter(ctx: click.Context):
    from .rate_limit import RateLimiter

    quiet = _is_quiet(ctx)

    def on_cooldown(seconds: float) -> None:
        if not quiet:
            click.echo(f"Approaching rate limit, waiting {seconds:.0f}s...", err=True)

    return RateLimiter(on_cooldown=on_cooldown)


def _mask(secret: str) -> str:
    if not secret:
        return "(not set)"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group(cls=JsonErrorGroup)
@click.version_option(version=MINDWEAVER_VERSION, prog_name="mw")
@click.option(
    "--vault",
    type=click.Path(file_okay=False),
    envvar="MINDWEAVER_VAULT",
    help="Vault directory (default: discovered from .mindweaver.yaml)",
)
@click.option(
    "--json-errors",
    "json_errors",
    is_flag=True,
    help="Output errors as JSON (for programmatic use)",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    envvar="MINDWEAVER_QUIET",
    help="Suppress status messages and warnings",
)
@click.pass_context
def cli(ctx: click.Context, vault: str | None, json_errors: bool, quiet: bool):
    """mw: find meaningful connections between notes in a markdown vault.

    \b
    Quick start:
      mw connect "Compound interest.md"     # Print a "Related notes" section
      mw connect Budget.md --write          # Append it to the note
      mw tags Budget.md                     # Suggest tags already used in the vault

    \b
    Settings live in .mindweaver.yaml at the vault root. API keys come from
    OPENAI_API_KEY, ANTHROPIC_API_KEY or TOGETHER_API_KEY.
    """
    from ._logging import set_quiet_mode

    ctx.ensure_object(dict)
    ctx.obj["vault"] = vault
    ctx.obj["json_errors"] = json_errors
    ctx.obj["quiet"] = quiet

    if quiet:
        set_quiet_mode(True)


# ─────────────────────────────────────────────────────────────────────────────
# Connect Command
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("note")
@click.option("--write", is_flag=True, help="Insert the section into the note instead of printing it")
@click.option(
    "--line",
    type=click.IntRange(min=0),
    help="Insert after this line number (default: end of note). Implies --write",
)
@click.option(
    "--strength",
    type=click.Choice(["strict", "balanced", "relaxed"]),
    help="Override connection_strength from the settings file",
)
@click.option(
    "--format",
    "link_format",
    type=click.Choice(["comma", "bullet", "numbered", "line"]),
    help="Override link_format from the settings file",
)
@click.option("--no-header", is_flag=True, help="Omit the section header")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def connect(
    ctx: click.Context,
    note: str,
    write: bool,
    line: int | None,
    strength: str | None,
    link_format: str | None,
    no_header: bool,
    as_json: bool,
):
    """Find notes meaningfully connected to NOTE.

    Every other note is screened by title first, then the survivors are
    compared with NOTE in full. Accepted links are printed as a section,
    or written into the note with --write.

    \b
    Examples:
      mw connect "Compound interest.md"
      mw connect Budget.md --strength strict --format bullet
      mw connect Budget.md --write --line 3
    """
    from .concepts_index import ConceptsIndexer
    from .core import find_connections
    from .llm_providers import ModelGateway, resolve_profile
    from .models import ConnectionState
    from .vault import BufferSink, FileSystemVault, NoteInsertSink

    root = _vault_root(ctx)
    config = _load_config(ctx, root)

    overrides: dict[str, Any] = {}
    if strength:
        overrides["connection_strength"] = strength
    if link_format:
        overrides["link_format"] = link_format
    if no_header:
        overrides["show_header"] = False
    if overrides:
        config = config.model_copy(update=overrides)

    vault = FileSystemVault(root)
    try:
        note_path = vault.resolve_active(note)
    except WeaverError as exc:
        _handle_error(ctx, exc)

    write = write or line is not None
    sink = NoteInsertSink(root / note_path, line) if write else BufferSink()

    async def _run():
        async with ModelGateway() as gateway:
            limiter = _make_limiter(ctx)
            indexer = None
            if config.use_concepts_index:
                indexer = ConceptsIndexer(gateway, limiter, resolve_profile(config), vault_root=root)
            return await find_connections(
                vault,
                note_path,
                config,
                gateway,
                limiter,
                sink,
                on_status=_status_printer(ctx),
                indexer=indexer,
            )

    try:
        result = run_async(_run())
    except Exception as exc:
        _handle_error(ctx, exc)

    if result.state == ConnectionState.ABORTED:
        code = ErrorCode(result.error_code or ErrorCode.INTERNAL_ERROR.value)
        _handle_error(ctx, WeaverError(code, result.error or "Aborted"))

    if as_json:
        output(
            {
                "note": note_path,
                "links": result.links,
                "text": result.text,
                "written": write and bool(result.links),
                "candidates": result.candidates,
                "prefiltered": result.prefiltered,
                "validated": result.validated,
            },
            as_json=True,
        )
    elif not write and result.text:
        click.echo(result.text, nl=False)


# ─────────────────────────────────────────────────────────────────────────────
# Tags Command
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("note")
@click.option("--write", is_flag=True, help="Append the tags to the note instead of printing them")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def tags(ctx: click.Context, note: str, write: bool, as_json: bool):
    """Suggest tags for NOTE from tags already used in the vault.

    Custom tags from the settings file are offered too (or exclusively,
    with custom_tags_only). Tags the note already has are never suggested.

    \b
    Examples:
      mw tags "Trip planning.md"
      mw tags Budget.md --write
    """
    from .core import suggest_tags
    from .llm_providers import ModelGateway
    from .vault import BufferSink, FileSystemVault, NoteInsertSink

    root = _vault_root(ctx)
    config = _load_config(ctx, root)

    vault = FileSystemVault(root)
    try:
        note_path = vault.resolve_active(note)
    except WeaverError as exc:
        _handle_error(ctx, exc)

    sink = NoteInsertSink(root / note_path) if write else BufferSink()

    async def _run():
        async with ModelGateway() as gateway:
            return await suggest_tags(
                vault,
                note_path,
                config,
                gateway,
                _make_limiter(ctx),
                sink,
                on_status=_status_printer(ctx),
            )

    try:
        result = run_async(_run())
    except Exception as exc:
        _handle_error(ctx, exc)

    if result.error:
        code = ErrorCode(result.error_code or ErrorCode.INTERNAL_ERROR.value)
        _handle_error(ctx, WeaverError(code, result.error))

    if as_json:
        output(
            {
                "note": note_path,
                "tags": result.tags,
                "written": write and bool(result.tags),
                "vocabulary_size": result.vocabulary_size,
            },
            as_json=True,
        )
    elif not write and result.text:
        click.echo(result.text)


# ─────────────────────────────────────────────────────────────────────────────
# Reindex Command
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def reindex(ctx: click.Context, as_json: bool):
    """Rebuild the concepts index for every note in the vault.

    Notes are summarized five at a time. The index is used to enrich the
    title screening when use_concepts_index is enabled.

    \b
    Examples:
      mw reindex
      mw reindex --json
    """
    from .concepts_index import get_index_path
    from .core import reindex_vault
    from .llm_providers import ModelGateway
    from .vault import FileSystemVault

    root = _vault_root(ctx)
    config = _load_config(ctx, root)
    vault = FileSystemVault(root)

    async def _run():
        async with ModelGateway() as gateway:
            return await reindex_vault(
                vault,
                config,
                gateway,
                _make_limiter(ctx),
                vault_root=root,
                on_status=_status_printer(ctx),
            )

    try:
        count = run_async(_run())
    except Exception as exc:
        _handle_error(ctx, exc)

    if as_json:
        output({"indexed": count, "index_path": str(get_index_path(root))}, as_json=True)


# ─────────────────────────────────────────────────────────────────────────────
# Exclude Command Group
# ─────────────────────────────────────────────────────────────────────────────


@cli.group(invoke_without_command=True)
@click.pass_context
def exclude(ctx: click.Context):
    """Manage folders skipped when finding connections.

    \b
    Examples:
      mw exclude                 # List excluded folders
      mw exclude add Templates
      mw exclude remove Archive/2023
    """
    if ctx.invoked_subcommand is None:
        ctx.invoke(exclude_list)


@exclude.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def exclude_list(ctx: click.Context, as_json: bool = False):
    """List excluded folders."""
    root = _vault_root(ctx)
    config = _load_config(ctx, root)

    if as_json:
        output({"excluded_folders": config.excluded_folders}, as_json=True)
    elif config.excluded_folders:
        for folder in config.excluded_folders:
            click.echo(folder)
    else:
        click.echo("No excluded folders.")


@exclude.command("add")
@click.argument("folder")
@click.pass_context
def exclude_add(ctx: click.Context, folder: str):
    """Exclude FOLDER (and everything below it)."""
    from .config import ConfigurationError, add_excluded_folder, save_weaver_config

    root = _vault_root(ctx)
    config = _load_config(ctx, root)

    try:
        changed = add_excluded_folder(config, folder)
    except ConfigurationError as exc:
        _handle_error(ctx, exc)

    if not changed:
        click.echo(f"Already excluded: {folder}")
        return

    save_weaver_config(config, root)
    if not (root / folder.strip("/")).is_dir() and not _is_quiet(ctx):
        click.echo(f"Warning: {folder} is not a folder in this vault", err=True)
    click.echo(f"Excluded: {config.excluded_folders[-1]}")


@exclude.command("remove")
@click.argument("folder")
@click.pass_context
def exclude_remove(ctx: click.Context, folder: str):
    """Stop excluding FOLDER."""
    from .config import remove_excluded_folder, save_weaver_config

    root = _vault_root(ctx)
    config = _load_config(ctx, root)

    if not remove_excluded_folder(config, folder):
        click.echo(f"Not excluded: {folder}")
        return

    save_weaver_config(config, root)
    click.echo(f"Removed: {folder.strip('/')}")


# ─────────────────────────────────────────────────────────────────────────────
# Config Command
# ─────────────────────────────────────────────────────────────────────────────


@cli.command("config")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def config_cmd(ctx: click.Context, as_json: bool):
    """Show the effective settings for the vault (API keys masked)."""
    from .config import get_config_path
    from .llm_providers import resolve_profile

    root = _vault_root(ctx)
    config = _load_config(ctx, root)
    profile = resolve_profile(config)

    data = config.model_dump(mode="json")
    for key in ("openai_api_key", "anthropic_api_key", "together_api_key"):
        data[key] = _mask(data[key])
    data["resolved"] = {
        "provider": profile.kind,
        "model_id": profile.model_id,
        "endpoint": profile.endpoint or "(provider default)",
        "credential": "(not needed)" if profile.kind == "local" else _mask(profile.credential),
    }

    if as_json:
        output({"vault": str(root), "settings_file": str(get_config_path(root)), **data}, as_json=True)
        return

    click.echo(f"Vault:         {root}")
    click.echo(f"Settings file: {get_config_path(root)}")
    for key, value in data.items():
        if key == "resolved":
            continue
        click.echo(f"{key + ':':<22} {value}")
    click.echo("Resolved provider:")
    for key, value in data["resolved"].items():
        click.echo(f"  {key + ':':<20} {value}")


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def main():
    """Entry point for mw CLI."""
    from ._logging import configure_logging

    configure_logging()
    cli()


if __name__ == "__main__":
    main()

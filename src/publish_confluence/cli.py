"""Command-line interface for publishing page trees to Confluence."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from .config import PublishConfig, ensure_config
from .confluence.backend import PageBackend
from .confluence.client import create_client
from .confluence.xhtml import xhtml_suggestions
from .errors import BadRequestError, ConfigurationError, ConfluenceApiError, PublishAbortedError, PublishError
from .local.repository import LocalRepository
from .pages import CONFIG_FILENAME, PageSpec, load_page_tree
from .sync.renderer import ContentRenderer
from .sync.service import PublishResult, PublishService

app = typer.Typer(help="Publish JavaScript build output and templated pages to Confluence.")
console = Console()

EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def configure_logging(*, quiet: bool = False, verbose: bool = False, debug: bool = False) -> None:
    if quiet:
        level = logging.ERROR
    elif verbose or debug:
        level = logging.DEBUG
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=debug, markup=False)],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def _build_backend(config: PublishConfig, *, dry_run: Optional[Path]) -> PageBackend:
    if dry_run is not None:
        return LocalRepository(dry_run.resolve())

    credentials = config.credentials
    if credentials is None:
        raise ConfigurationError("Missing Confluence credentials for publishing")
    settings = config.settings
    if settings.allow_self_signed:
        logging.getLogger(__name__).warning("TLS certificate verification is disabled")
    return create_client(
        base_url=credentials.url,
        token=credentials.token,
        email=credentials.email,
        api_token=credentials.api_token,
        verify=not settings.allow_self_signed,
        timeout=settings.timeout,
        request_attempts=settings.request_attempts,
    )


async def _publish(root: PageSpec, config: PublishConfig, *, base_path: Path, dry_run: Optional[Path]) -> PublishResult:
    async with _build_backend(config, dry_run=dry_run) as backend:
        service = PublishService(backend, ContentRenderer(base_path), settings=config.settings)
        return await service.publish(root)


def troubleshooting_steps(error: BaseException) -> list[str]:
    """Suggestions printed below a fatal publishing error."""

    cause = error.__cause__ if isinstance(error, PublishAbortedError) else error
    status = cause.status_code if isinstance(cause, ConfluenceApiError) else None
    if status == 401:
        return [
            "Verify your CONFLUENCE_TOKEN is valid and not expired",
            "Ensure the token has appropriate permissions for the space",
            "Check if your Confluence URL is correct (CONFLUENCE_BASE_URL)",
        ]
    if status == 403:
        return [
            "Your account lacks permission to perform this operation",
            "Verify you have write access to the specified space",
            "Check if the space or page has restricted permissions",
        ]
    if status == 404:
        return [
            "Check that the space key exists",
            "Verify the parent page title is spelled correctly",
            "Ensure the parent page is published before its children",
        ]
    return [
        "Check your network connection",
        "Verify Confluence server is reachable",
        "Check your authentication credentials",
    ]


def _format_result(result: PublishResult, *, dry_run: bool) -> None:
    title = "Dry-Run Summary" if dry_run else "Confluence Publish Summary"
    table = Table(title=title)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Processed pages", str(result.processed_pages))
    table.add_row("Created pages", str(result.created_pages))
    table.add_row("Updated pages", str(result.updated_pages))
    table.add_row("Failed pages", str(len(result.failures)))
    table.add_row("Failed attachments", str(len(result.failed_attachments)))
    console.print(table)

    if result.pages:
        pages = Table(title="Pages")
        pages.add_column("Title")
        pages.add_column("Space")
        pages.add_column("ID")
        pages.add_column("Version", justify="right")
        pages.add_column("Action")
        for published in result.pages:
            page = published.page
            pages.add_row(escape(page.title), page.space_key, page.id, str(page.version), published.action)
        console.print(pages)


def _report_xhtml_errors(error: PublishAbortedError) -> None:
    cause = error.__cause__
    if not isinstance(cause, BadRequestError) or not cause.xhtml_errors:
        return
    console.print("Malformed XHTML content:")
    for index, issue in enumerate(cause.xhtml_errors, start=1):
        location = f" ({issue.location})" if issue.location else ""
        console.print(f"  {index}. {escape(issue.message)}{escape(location)}", highlight=False)
    console.print("Suggestions to fix XHTML issues:")
    for suggestion in xhtml_suggestions(cause.xhtml_errors):
        console.print(f"  - {escape(suggestion)}", highlight=False)


def _report_abort(error: PublishAbortedError) -> None:
    page = escape(repr(error.title))
    space = escape(repr(error.space_key))
    console.print(f"[bold red]Publishing failed:[/bold red] {page} in space {space}")
    console.print(f"  State: {error.state}")
    console.print(f"  Reason: {escape(error.reason)}")
    if error.skipped_pages:
        console.print(f"  Skipped pages: {escape(', '.join(error.skipped_pages))}")
    else:
        console.print("  Skipped pages: none")
    _report_xhtml_errors(error)
    console.print("Troubleshooting steps:")
    for index, step in enumerate(troubleshooting_steps(error), start=1):
        console.print(f"  {index}. {step}")


def _load_tree(config_file: Path) -> PageSpec:
    try:
        return load_page_tree(config_file)
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {escape(str(exc))}", highlight=False)
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from exc


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a TOML file with credentials and settings",
    ),
) -> None:
    ctx.obj = {"config_path": config_path}


@app.command()
def publish(
    ctx: typer.Context,
    config_file: Path = typer.Option(
        Path(CONFIG_FILENAME),
        "--file",
        "-f",
        help="Page configuration file",
    ),
    dry_run: Optional[Path] = typer.Option(
        None,
        "--dry-run",
        help="Write the pages to this directory instead of Confluence",
    ),
    base_url: Optional[str] = typer.Option(None, help="Base URL of the Confluence instance"),
    token: Optional[str] = typer.Option(None, help="Personal access token"),
    email: Optional[str] = typer.Option(None, help="Account email used with --api-token"),
    api_token: Optional[str] = typer.Option(None, help="Confluence API token"),
    allow_self_signed: Optional[bool] = typer.Option(
        None,
        "--allow-self-signed/--verify-ssl",
        help="Accept self-signed TLS certificates",
    ),
    continue_on_error: bool = typer.Option(
        False,
        "--continue-on-error",
        help="Skip only the failing page's subtree instead of aborting the run",
    ),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log errors"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every step"),
    debug: bool = typer.Option(False, "--debug", help="Log every step and HTTP request"),
) -> None:
    """Publish the page tree declared in the configuration file."""

    configure_logging(quiet=quiet, verbose=verbose, debug=debug)
    root = _load_tree(config_file)

    try:
        config = ensure_config(
            base_url=base_url,
            token=token,
            email=email,
            api_token=api_token,
            fail_fast=False if continue_on_error else None,
            allow_self_signed=allow_self_signed,
            config_path=ctx.obj.get("config_path") if ctx.obj else None,
            require_credentials=dry_run is None,
        )
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {escape(str(exc))}", highlight=False)
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from exc

    try:
        result = asyncio.run(_publish(root, config, base_path=config_file.parent.resolve(), dry_run=dry_run))
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {escape(str(exc))}", highlight=False)
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from exc
    except PublishAbortedError as exc:
        _report_abort(exc)
        raise typer.Exit(code=EXIT_FAILURE) from exc
    except PublishError as exc:
        console.print(f"[bold red]Publishing failed:[/bold red] {escape(str(exc))}", highlight=False)
        raise typer.Exit(code=EXIT_FAILURE) from exc

    _format_result(result, dry_run=dry_run is not None)
    for failure in result.failures:
        _report_abort(failure.error)

    if dry_run is not None:
        console.print(f"Dry run written to [bold]{dry_run}[/bold].")
    if not result.succeeded:
        raise typer.Exit(code=EXIT_FAILURE)


@app.command()
def validate(
    config_file: Path = typer.Option(
        Path(CONFIG_FILENAME),
        "--file",
        "-f",
        help="Page configuration file",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every step"),
) -> None:
    """Check the configuration file and print the effective page tree."""

    configure_logging(verbose=verbose)
    root = _load_tree(config_file)

    def _label(page: PageSpec) -> str:
        label = f"[bold]{escape(page.title)}[/bold] ({page.space_key})"
        if page.has_macro:
            label += f" macro={page.macro_template_path}"
        return label

    def _add(branch: Tree, page: PageSpec) -> None:
        for child in page.children:
            effective = child.inherit_from(page, parent_page_title=page.title)
            _add(branch.add(_label(effective)), effective)

    tree = Tree(_label(root))
    _add(tree, root)
    console.print(tree)
    console.print(f"Configuration {config_file} is valid.")


def run() -> None:
    """Entry point for console scripts."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()

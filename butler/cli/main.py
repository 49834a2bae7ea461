"""CLI entry point for Inbox Butler."""

import logging
from dataclasses import dataclass

import click
from dotenv import load_dotenv

from butler.config import ButlerConfig
from butler.storage.db import ButlerDatabase

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Shared objects handed to every command via ``ctx.obj``."""

    config: ButlerConfig
    db: ButlerDatabase


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log run progress at INFO level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Inbox Butler: archive replied-to mail, park duplicates, AI triage."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    config = ButlerConfig.from_env()
    db = ButlerDatabase(db_path=config.db_path)
    ctx.obj = AppContext(config=config, db=db)
    ctx.call_on_close(db.close)


# Import and register commands after cli is defined to avoid circular imports.
from butler.cli.commands import archive, last_result, scan, tokens, triage  # noqa: E402

cli.add_command(scan)
cli.add_command(archive)
cli.add_command(triage)
cli.add_command(last_result)
cli.add_command(tokens)

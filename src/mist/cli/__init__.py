"""
mist CLI -- one profile, one direction, one run.

    mist PROFILE            bidirectional sync
    mist PROFILE --push     local -> remote mirror
    mist PROFILE --pull     remote -> local mirror

Entry point: mist.cli:main
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.markup import escape

from .. import __version__
from ..config import default_search_paths, home_from_env, load, load_configuration
from ..errors import ConfigError, EXIT_USAGE
from ..models import SyncMode
from ..orchestrator import SyncOrchestrator
from ._common import console, render_result, setup_logging


@click.command()
@click.version_option(version=__version__, prog_name="mist")
@click.argument("profile")
@click.option(
    "--push", "-p", is_flag=True,
    help="Encrypt local and mirror it to remote, overwriting remote.",
)
@click.option(
    "--pull", "-P", is_flag=True,
    help="Mirror remote and decrypt it into local, overwriting local copies.",
)
@click.option(
    "--config", "-c", "config_path", default=None,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file to use instead of the default search path.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log each step of the run.")
def main(profile: str, push: bool, pull: bool, config_path: Optional[Path], verbose: bool):
    """Keep PROFILE's local directory and its encrypted remote copy in sync.

    Without --push or --pull both sides are reconciled.

    Examples:

        mist docs

        mist docs --push

        mist docs --pull -c ~/dotfiles/mist.yaml
    """
    if push and pull:
        console.print("[red]--push and --pull are mutually exclusive.[/]")
        sys.exit(EXIT_USAGE)

    setup_logging(verbose)
    mode = SyncMode.PUSH if push else SyncMode.PULL if pull else SyncMode.SYNC

    try:
        home = home_from_env()
        if config_path is not None:
            configuration = load_configuration(config_path)
        else:
            configuration = load(default_search_paths(home))
        target = configuration.lookup(profile)
    except ConfigError as exc:
        console.print(f"[bold red]Configuration error:[/] {escape(str(exc))}")
        sys.exit(exc.exit_code)

    orchestrator = SyncOrchestrator(configuration, home=home)
    result = orchestrator.run(target, mode)
    render_result(result)
    sys.exit(result.exit_code)

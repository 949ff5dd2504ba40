"""Command line interface."""

import logging
from pathlib import Path
from typing import Annotated

import typer

from aptmirror.config import load_config
from aptmirror.errors import AptMirrorError
from aptmirror.index import merge
from aptmirror.sync import Mirror
from aptmirror.version import compare

logger = logging.getLogger(__name__)

cli = typer.Typer(help="Mirror a dependency closed subset of Debian package archives.", no_args_is_help=True)

ConfigArg = Annotated[
    Path,
    typer.Argument(exists=True, dir_okay=False, readable=True, help="Mirror configuration (YAML)"),
]
VerboseOpt = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]


def _set_verbose(verbose: bool) -> None:
    if verbose:
        logging.getLogger("aptmirror").setLevel(logging.DEBUG)


@cli.command()
def sync(config: ConfigArg, verbose: VerboseOpt = False) -> None:
    """Load all sources, resolve the minimal package set and download it."""
    _set_verbose(verbose)
    try:
        with Mirror(load_config(config)) as mirror:
            files = mirror.run()
    except AptMirrorError as e:
        logger.error(f"Sync failed: {e}")
        raise typer.Exit(code=1) from e
    logger.info(f"Mirror complete: {len(files)} packages")


@cli.command()
def resolve(
    config: ConfigArg,
    packages: Annotated[list[str], typer.Argument(help="Package names to resolve")],
    arch: Annotated[str | None, typer.Option("--arch", "-a", help="Only resolve for this architecture")] = None,
    essentials: Annotated[bool, typer.Option(help="Include essential packages")] = False,
    verbose: VerboseOpt = False,
) -> None:
    """Print the dependency closure of PACKAGES without downloading packages."""
    _set_verbose(verbose)
    try:
        mirror_config = load_config(config)
        if arch:
            mirror_config.architectures = [arch]
        with Mirror(mirror_config) as mirror:
            mirror.load_sources()
            entries = merge(*mirror.selections(*packages, essentials=essentials))
    except AptMirrorError as e:
        logger.error(f"Resolve failed: {e}")
        raise typer.Exit(code=1) from e
    for name, package_arch in sorted(entries):
        typer.echo(f"{name}:{package_arch}")


@cli.command("compare-versions")
def compare_versions(a: str, b: str) -> None:
    """Compare two Debian versions, printing <, = or >."""
    try:
        result = compare(a, b)
    except AptMirrorError as e:
        logger.error(str(e))
        raise typer.Exit(code=1) from e
    typer.echo(f"{a} {'<' if result < 0 else '>' if result > 0 else '='} {b}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()

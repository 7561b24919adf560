"""Configuration CLI commands: validate and env."""

import importlib
from pathlib import Path

import click

from doccms.config import CMSOptions
from doccms.exceptions import ConfigurationError
from doccms.hooks import HookRegistry
from doccms.persistence import DatabaseConfig
from doccms.plugins import compose_plugins


@click.group()
def config():
    """Configuration commands."""
    pass


@config.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--import",
    "modules",
    multiple=True,
    help="Module registering named hooks; may be given more than once.",
)
def validate(path: Path, modules: tuple[str, ...]):
    """Validate a schema configuration file and summarise its hooks."""
    for module in modules:
        try:
            importlib.import_module(module)
        except ImportError as e:
            click.echo(click.style(f"Cannot import '{module}': {e}", fg="red"), err=True)
            raise SystemExit(1)

    try:
        options = compose_plugins(CMSOptions.load(path))
        table = HookRegistry().build(options)
    except ConfigurationError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        raise SystemExit(1)

    summary = table.summary()
    click.echo(f"Loaded {len(options.schemas)} schema(s):")
    for schema in sorted(options.schemas):
        schema_config = options.schemas[schema]
        click.echo(f"  ✓ {schema}")
        for point, count in summary[schema]["hooks"].items():
            click.echo(f"      {point}: {count} hook(s)")
        for name in summary[schema]["operations"]:
            click.echo(f"      operation {name}")
        for plugin in schema_config.plugins:
            click.echo(f"      plugin {plugin.name} (priority {plugin.priority})")

    click.echo(click.style("\nConfiguration is valid.", fg="green", bold=True))


@config.command()
def env():
    """Show the resolved database URL."""
    db = DatabaseConfig.from_env()
    click.echo(f"Database URL: {db.url}")

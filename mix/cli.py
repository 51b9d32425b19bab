"""mix command line interface"""

import logging
import sys
import threading
from pathlib import Path
from typing import Callable

import click

from mix import __version__, archive
from mix.config import Settings, load_settings
from mix.errors import MixError
from mix.manager import Manager
from mix.models import PackageMetadata
from mix.progress import QueueObserver

log = logging.getLogger("mix.cli")


class MixGroup(click.Group):
    """Command group resolving aliases and reporting engine errors.

    Any MixError raised by a command is printed as ``Error: <message>``
    and exits with status 1.
    """

    aliases = {"uninstall": "remove", "rm": "remove"}

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, self.aliases.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd, args = super().resolve_command(ctx, args)
        return cmd.name if cmd else None, cmd, args

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except MixError as e:
            raise click.ClickException(str(e)) from e


def format_size(size: int) -> str:
    """Human readable size using binary units"""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def confirm(question: str, yes: bool) -> bool:
    if yes:
        return True
    return click.confirm(f"\n{question}", default=False)


def run_with_progress(manager: Manager, names: list[str], action: Callable[[str], object]) -> None:
    """Apply ``action`` to each name, rendering progress on a terminal"""
    if not sys.stdout.isatty():
        for name in names:
            action(name)
        return

    observer = QueueObserver()
    manager.set_observer(observer)

    def render():
        with click.progressbar(length=100, label="Starting...", show_eta=False) as bar:
            done = 0
            for update in observer:
                bar.label = f"{update.package}: {update.message}"
                target = int(update.percent * 100)
                bar.update(target - done)
                done = target

    renderer = threading.Thread(target=render, daemon=True)
    renderer.start()
    try:
        for name in names:
            action(name)
    finally:
        observer.close()
        renderer.join()
        manager.set_observer(None)


@click.group(cls=MixGroup)
@click.version_option(__version__, prog_name="mix")
@click.option("--db", "database_path", type=click.Path(path_type=Path), help="path to package database")
@click.option("--repo", "repo_url", help="package repository URL")
@click.option("--cache", "cache_dir", type=click.Path(path_type=Path), help="package cache directory")
@click.option("--root", "root_dir", type=click.Path(path_type=Path), help="filesystem root to install into")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="YAML configuration file")
@click.option("--verbose", "-v", is_flag=True, help="verbose output")
@click.pass_context
def cli(ctx, database_path, repo_url, cache_dir, root_dir, config_path, verbose):
    """mix is the package manager for MixOS.

    It installs, removes, updates and searches for packages distributed in
    the .mixpkg format, with dependency resolution.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = load_settings(
        config_path,
        database_path=database_path,
        repo_url=repo_url,
        cache_dir=cache_dir,
        root_dir=root_dir,
    )


def open_manager(settings: Settings) -> Manager:
    Path(settings.cache_dir).mkdir(parents=True, exist_ok=True)
    return Manager(settings)


@cli.command()
@click.argument("packages", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="assume yes to all prompts")
@click.option("--no-deps", is_flag=True, help="skip dependency resolution")
@click.pass_obj
def install(settings: Settings, packages: tuple[str, ...], yes: bool, no_deps: bool):
    """Install packages with automatic dependency resolution"""
    with open_manager(settings) as manager:
        if no_deps:
            to_install = [name for name in packages if not manager.is_installed(name)]
        else:
            log.info("Resolving dependencies")
            to_install = manager.resolve_dependencies(list(packages))

        if not to_install:
            click.echo("All packages are already installed.")
            return

        click.echo("The following packages will be installed:")
        for name in to_install:
            click.echo(f"  {name}")
        click.echo(f"\nTotal: {len(to_install)} package(s)")

        if not confirm("Proceed with installation?", yes):
            click.echo("Installation cancelled.")
            return

        run_with_progress(manager, to_install, manager.install)
        click.echo("\nInstallation complete!")


@cli.command()
@click.argument("packages", nargs=-1, required=True)
@click.option("--yes", "-y", is_flag=True, help="assume yes to all prompts")
@click.option("--purge", is_flag=True, help="also remove configuration files")
@click.pass_obj
def remove(settings: Settings, packages: tuple[str, ...], yes: bool, purge: bool):
    """Remove installed packages (aliases: uninstall, rm)"""
    with open_manager(settings) as manager:
        targets = []
        for name in packages:
            if manager.is_installed(name):
                targets.append(name)
            else:
                click.echo(f"Package {name} is not installed, skipping.")

        if not targets:
            click.echo("No packages to remove.")
            return

        to_remove = manager.remove_order(targets)
        for name in targets:
            dependents = manager.reverse_dependencies(name)
            if dependents:
                click.echo(f"Warning: {name} is required by: {', '.join(dependents)}")

        click.echo("The following packages will be removed:")
        for name in to_remove:
            click.echo(f"  {name}")
        if purge:
            click.echo("  (configuration files will also be removed)")
        click.echo(f"\nTotal: {len(to_remove)} package(s)")

        if not confirm("Proceed with removal?", yes):
            click.echo("Removal cancelled.")
            return

        run_with_progress(manager, to_remove, lambda name: manager.remove(name, purge=purge))
        click.echo("\nRemoval complete!")


@cli.command()
@click.pass_obj
def update(settings: Settings):
    """Synchronize the package database with the repository"""
    with open_manager(settings) as manager:
        click.echo("Updating package database...")
        count = manager.update_database()
        click.echo(f"Package database updated successfully! ({count} packages)")


@cli.command()
@click.argument("packages", nargs=-1)
@click.option("--yes", "-y", is_flag=True, help="assume yes to all prompts")
@click.pass_obj
def upgrade(settings: Settings, packages: tuple[str, ...], yes: bool):
    """Upgrade installed packages to their latest versions"""
    with open_manager(settings) as manager:
        if packages:
            to_upgrade = []
            for name in packages:
                try:
                    pending = manager.check_upgrade(name)
                except MixError as e:
                    click.echo(f"Warning: {name}: {e}")
                    continue
                if pending is not None:
                    to_upgrade.append(pending)
        else:
            to_upgrade = manager.upgradable_packages()

        if not to_upgrade:
            click.echo("All packages are up to date.")
            return

        click.echo("The following packages will be upgraded:")
        for pending in to_upgrade:
            click.echo(f"  {pending.name} ({pending.current_version} -> {pending.new_version})")
        click.echo(f"\nTotal: {len(to_upgrade)} package(s)")

        if not confirm("Proceed with upgrade?", yes):
            click.echo("Upgrade cancelled.")
            return

        run_with_progress(manager, [p.name for p in to_upgrade], manager.upgrade)
        click.echo("\nUpgrade complete!")


@cli.command()
@click.argument("query", nargs=-1, required=True)
@click.option("--installed", "-i", is_flag=True, help="search only installed packages")
@click.pass_obj
def search(settings: Settings, query: tuple[str, ...], installed: bool):
    """Search packages by name or description"""
    text = " ".join(query)
    with open_manager(settings) as manager:
        results = manager.search(text, installed_only=installed)

    if not results:
        click.echo(f"No packages found matching '{text}'")
        return

    click.echo(f"Found {len(results)} package(s):\n")
    for result in results:
        status = "*" if result.installed else " "
        click.echo(f"[{status}] {result.name} ({result.version})")
        if result.description:
            click.echo(f"    {result.description}")
    click.echo("\n[*] = installed")


@cli.command(name="list")
@click.option("--all", "-a", "show_all", is_flag=True, help="list all available packages")
@click.pass_obj
def list_packages(settings: Settings, show_all: bool):
    """List installed packages"""
    with open_manager(settings) as manager:
        packages = manager.list_available() if show_all else manager.list_installed()

    if not packages:
        if show_all:
            click.echo("No packages available. Run 'mix update' to refresh the package database.")
        else:
            click.echo("No packages installed.")
        return

    kind = "Available" if show_all else "Installed"
    click.echo(f"{kind} packages ({len(packages)}):\n")
    for package in packages:
        status = " [installed]" if show_all and package.installed else ""
        click.echo(f"  {package.name:<30} {package.version}{status}")


@cli.command()
@click.argument("package")
@click.option("--files", "-f", "show_files", is_flag=True, help="list files installed by package")
@click.pass_obj
def info(settings: Settings, package: str, show_files: bool):
    """Show package information"""
    with open_manager(settings) as manager:
        record = manager.package_info(package)
        files = manager.package_files(package) if show_files and record.installed else []

    click.echo(f"Package: {record.name}")
    click.echo(f"Version: {record.version}")
    click.echo(f"Description: {record.description}")
    click.echo(f"Size: {format_size(record.size)}")
    click.echo(f"Installed: {'yes' if record.installed else 'no'}")
    click.echo(f"Dependencies: {', '.join(record.dependencies) or 'none'}")
    if record.checksum:
        click.echo(f"Checksum: {record.checksum}")

    if show_files and record.installed:
        click.echo(f"\nInstalled files ({len(files)}):")
        for path in files:
            click.echo(f"  {path}")


@cli.command()
@click.argument("source_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--output", "-o", type=click.Path(file_okay=False, path_type=Path), default=Path("."), help="output directory")
def build(source_dir: Path, output: Path):
    """Build a .mixpkg from a directory with metadata.json and files/"""
    metadata_path = source_dir / archive.METADATA_NAME
    try:
        metadata = PackageMetadata.model_validate_json(metadata_path.read_text())
    except (OSError, ValueError) as e:
        raise MixError(f"failed to read {metadata_path}: {e}") from e

    path = archive.create_package(
        source_dir, output / f"{metadata.name}-{metadata.version}.mixpkg", metadata
    )
    click.echo(f"Package created: {path}")
    click.echo(f"SHA256: {archive.sha256_file(path)}")


@cli.command()
@click.argument("repo_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def index(repo_dir: Path):
    """Write index.json for a directory of .mixpkg files"""
    from mix.repository import write_index

    click.echo(f"Index written: {write_index(repo_dir)}")


@cli.command()
@click.argument("repo_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--host", default="0.0.0.0", help="listen address")
@click.option("--port", default=8080, help="listen port")
def serve(repo_dir: Path, host: str, port: int):
    """Serve a directory of .mixpkg files as a package repository"""
    from mix.main import serve as run_server

    run_server(repo_dir, host=host, port=port)


def main():
    cli(prog_name="mix")


if __name__ == "__main__":
    main()

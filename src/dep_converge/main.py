import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .cli_config import (
    VALID_SCOPES,
    ComprehensiveConfig,
    apply_config_section,
    create_sample_config,
    get_config,
    load_config,
    load_config_file,
    validate_config_values,
)
from .engine import ProjectResolution, ResolutionEngine
from .error_handling import CyclicDependencyError, DepConvergeError
from .parsers import get_supported_file_types
from .relocation import RelocationOutcome, relocate_many
from .reporting import (
    ResolutionReporter,
    create_progress_spinner,
    relocation_to_dict,
    report_to_json,
    resolution_to_json,
)
from .repository import (
    ChainedRepository,
    LocalRepository,
    ManifestRepository,
    RemoteRepository,
)
from .structured_logging import configure_logging

__version__ = "1.0.0"

console = Console(emoji=False)
error_console = Console(stderr=True, emoji=False)


def build_repository(
    repositories: Tuple[str, ...], remote: Optional[str]
) -> ManifestRepository:
    """Repository chain from CLI options, falling back to the configuration."""
    config = get_config().repository
    chain: List[ManifestRepository] = [
        LocalRepository(path) for path in (repositories or config.local_paths)
    ]
    remote_url = remote or config.remote_url
    if remote_url:
        chain.append(
            RemoteRepository(
                remote_url,
                rate_limit_rps=config.rate_limit,
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                user_agent=config.user_agent,
            )
        )
    if not chain:
        raise click.ClickException("No repository configured; use --repository or --remote")
    return chain[0] if len(chain) == 1 else ChainedRepository(chain)


async def async_resolve_project(
    locator: str,
    repository: ManifestRepository,
    scopes: Optional[List[str]],
    max_concurrent: Optional[int],
) -> ProjectResolution:
    """Run the full resolution pipeline for one manifest."""
    engine = ResolutionEngine(repository, max_concurrent=max_concurrent, scopes=scopes)
    return await engine.resolve_locator(locator)


def run_resolution(
    locator: str,
    repositories: Tuple[str, ...],
    remote: Optional[str],
    scopes: Tuple[str, ...],
    max_concurrent: Optional[int],
    quiet: bool,
    verbose: bool,
) -> ProjectResolution:
    """Resolve a project, turning resolver errors into a clean exit."""
    repository = build_repository(repositories, remote)
    if verbose and not quiet:
        error_console.print(f"📁 Manifest: {escape(locator)}", style="blue")
        error_console.print(f"📦 Repository: {escape(repr(repository))}", style="dim")

    try:
        if quiet:
            return asyncio.run(
                async_resolve_project(locator, repository, list(scopes) or None, max_concurrent)
            )
        with create_progress_spinner("Resolving dependency graph...", error_console):
            return asyncio.run(
                async_resolve_project(locator, repository, list(scopes) or None, max_concurrent)
            )
    except CyclicDependencyError as e:
        error_console.print(f"❌ {escape(str(e))}", style="red")
        error_console.print("Add an exclusion to one of the edges to break the cycle", style="dim")
        sys.exit(1)
    except DepConvergeError as e:
        error_console.print(f"❌ Error: {escape(str(e))}", style="red")
        sys.exit(1)


def write_output(content: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(content)
        error_console.print(f"✅ Results saved to {escape(output_file)}", style="green")
    else:
        click.echo(content)


def resolution_options(func):
    """Options shared by every command that resolves a manifest."""
    options = [
        click.argument("manifest"),
        click.option(
            "--repository",
            "-r",
            "repositories",
            multiple=True,
            type=click.Path(file_okay=False),
            help="Local Maven-layout repository (repeatable; default from config)",
        ),
        click.option("--remote", help="Remote Maven repository URL"),
        click.option(
            "--scope",
            "scopes",
            multiple=True,
            type=click.Choice(VALID_SCOPES, case_sensitive=False),
            help="Scopes to include (repeatable; default from config)",
        ),
        click.option(
            "--max-concurrent", type=int, help="Maximum concurrent manifest fetches"
        ),
        click.option(
            "--output-format",
            type=click.Choice(["console", "json"], case_sensitive=False),
            help="Output format for results (default from config)",
        ),
        click.option(
            "--output-file",
            "-o",
            type=click.Path(dir_okay=False),
            help="Save results to file (JSON format only)",
        ),
        click.option("--quiet", "-q", is_flag=True, help="Suppress non-critical output"),
        click.option("--verbose", "-v", is_flag=True, help="Enable verbose output"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _resolve_output_format(output_format: Optional[str], output_file: Optional[str]) -> str:
    final_format = (output_format or get_config().resolve.output_format).lower()
    if output_file and final_format != "json":
        raise click.ClickException("Output file can only be used with JSON format")
    return final_format


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.pass_context
def cli(ctx, version):
    """
    📦 dep-converge: Maven-style dependency resolution and shading

    Builds transitive dependency graphs, picks one version per library
    (nearest wins, dependency management forces), reports version conflicts
    and relocates packages inside JARs.
    """
    if version:
        console.print(f"dep-converge version {__version__}", style="bold blue")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        return

    config = load_config()
    configure_logging(config.logging.log_level, config.logging.enable_json)


@cli.command("resolve")
@resolution_options
@click.option(
    "--fail-on-conflict",
    is_flag=True,
    help="Exit with error code if any dependency fails to converge",
)
def resolve_command(
    manifest: str,
    repositories: Tuple[str, ...],
    remote: Optional[str],
    scopes: Tuple[str, ...],
    max_concurrent: Optional[int],
    output_format: Optional[str],
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
    fail_on_conflict: bool,
) -> None:
    """
    Resolve MANIFEST and print the classpath.

    MANIFEST is a pom.xml / JSON / YAML / TOML manifest file, or a
    group:artifact:version looked up in the repositories.

    Examples:

      dep-converge resolve pom.xml

      dep-converge resolve pom.xml -r ./repo --output-format json -o classpath.json

      dep-converge resolve com.example:app:1.0 --remote https://repo1.maven.org/maven2
    """
    final_format = _resolve_output_format(output_format, output_file)
    resolution = run_resolution(
        manifest, repositories, remote, scopes, max_concurrent, quiet, verbose
    )

    if final_format == "json":
        write_output(resolution_to_json(resolution), output_file)
    elif not quiet:
        ResolutionReporter(console).print_resolution(resolution, manifest)
    else:
        for entry in resolution.classpath():
            click.echo(entry.location or entry.label)

    if resolution.has_conflicts and (fail_on_conflict or get_config().resolve.fail_on_conflict):
        sys.exit(1)


@cli.command("tree")
@resolution_options
def tree_command(
    manifest: str,
    repositories: Tuple[str, ...],
    remote: Optional[str],
    scopes: Tuple[str, ...],
    max_concurrent: Optional[int],
    output_format: Optional[str],
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """Print the dependency tree of MANIFEST with conflict annotations."""
    final_format = _resolve_output_format(output_format, output_file)
    resolution = run_resolution(
        manifest, repositories, remote, scopes, max_concurrent, quiet, verbose
    )

    if final_format == "json":
        write_output(resolution_to_json(resolution), output_file)
    else:
        ResolutionReporter(console).print_tree(resolution, manifest)


@cli.command("check")
@resolution_options
@click.option(
    "--fail-on-conflict/--no-fail-on-conflict",
    default=True,
    show_default=True,
    help="Exit with error code if any dependency fails to converge",
)
def check_command(
    manifest: str,
    repositories: Tuple[str, ...],
    remote: Optional[str],
    scopes: Tuple[str, ...],
    max_concurrent: Optional[int],
    output_format: Optional[str],
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
    fail_on_conflict: bool,
) -> None:
    """
    Check that every dependency of MANIFEST converges on one version.

    Examples:

      dep-converge check pom.xml

      dep-converge check pom.xml --no-fail-on-conflict --output-format json
    """
    final_format = _resolve_output_format(output_format, output_file)
    resolution = run_resolution(
        manifest, repositories, remote, scopes, max_concurrent, quiet, verbose
    )

    if final_format == "json":
        write_output(report_to_json(resolution.report), output_file)
    elif not quiet:
        ResolutionReporter(console).print_report(resolution, manifest)
    elif resolution.has_conflicts:
        error_console.print(
            f"❌ {len(resolution.report)} dependency convergence error(s) in {escape(manifest)}",
            style="red",
        )

    if resolution.has_conflicts and fail_on_conflict:
        sys.exit(1)


def parse_relocations(relocations: Tuple[str, ...]) -> Dict[str, str]:
    """Turn ``OLD=NEW`` (or bare ``OLD``) options into a prefix map."""
    prefix = get_config().relocation.default_prefix
    prefix_map: Dict[str, str] = {}
    for relocation in relocations:
        source, separator, target = relocation.partition("=")
        source, target = source.strip(), target.strip()
        if not source or (separator and not target):
            raise click.BadParameter(
                f"Expected OLD=NEW or OLD, got {relocation!r}", param_hint="--relocate"
            )
        prefix_map[source] = target if separator else f"{prefix}.{source}"
    return prefix_map


def _output_path(artifact: Path, output: Optional[str], batch: bool) -> Path:
    if output is None:
        return artifact.with_name(f"{artifact.stem}-relocated{artifact.suffix}")
    if batch:
        return Path(output) / artifact.name
    return Path(output)


@cli.command("relocate")
@click.argument(
    "artifacts",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, readable=True, dir_okay=False),
)
@click.option(
    "--relocate",
    "relocations",
    multiple=True,
    required=True,
    help="Package to move, as OLD=NEW or OLD (moved under the default prefix); repeatable",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    help="Output file (one artifact) or directory (several artifacts)",
)
@click.option(
    "--no-string-literals",
    is_flag=True,
    help="Leave string constants that name relocated classes untouched",
)
@click.option(
    "--output-format",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default="console",
    show_default=True,
    help="Output format for the summary",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-critical output")
def relocate_command(
    artifacts: Tuple[str, ...],
    relocations: Tuple[str, ...],
    output: Optional[str],
    no_string_literals: bool,
    output_format: str,
    quiet: bool,
) -> None:
    """
    Relocate packages inside JARs or class files.

    Examples:

      dep-converge relocate guava-10.0.jar --relocate com.google.common=shaded.guava10

      dep-converge relocate a.jar b.jar --relocate com.google.common -o shaded/
    """
    prefix_map = parse_relocations(relocations)
    batch = len(artifacts) > 1
    if batch and output:
        Path(output).mkdir(parents=True, exist_ok=True)

    inputs = [(path, Path(path).read_bytes()) for path in artifacts]
    options = {"rewrite_string_literals": False} if no_string_literals else {}

    try:
        outcomes: List[RelocationOutcome] = asyncio.run(
            relocate_many(inputs, prefix_map, **options)
        )
    except ValueError as e:
        raise click.ClickException(str(e))

    for outcome in outcomes:
        if outcome.ok and outcome.data is not None:
            _output_path(Path(outcome.name), output, batch).write_bytes(outcome.data)

    if output_format == "json":
        click.echo(json.dumps(relocation_to_dict(outcomes), indent=2))
    elif not quiet:
        ResolutionReporter(console).print_relocation_results(outcomes)

    failed = [outcome for outcome in outcomes if not outcome.ok]
    if failed:
        if quiet:
            for outcome in failed:
                error_console.print(
                    f"❌ {escape(outcome.name)}: {escape(str(outcome.error))}", style="red"
                )
        sys.exit(1)


@cli.command()
def info():
    """Show supported manifest formats, resolution rules and usage examples."""
    file_types = ", ".join(f"[green]{t}[/green]" for t in get_supported_file_types())
    info_text = f"""
[bold blue]📋 Supported Manifests:[/bold blue]

• {file_types}
• [green]group:artifact:version[/green] - looked up in the repositories

[bold blue]⚖️  Version Selection:[/bold blue]

• [yellow]Dependency management[/yellow] - a managed version always wins
• [yellow]Nearest wins[/yellow] - the version closest to the project is chosen
• [yellow]First declaration[/yellow] - breaks ties between equally near versions

[bold blue]🌍 Environment Variables:[/bold blue]

• [cyan]DEP_CONVERGE_REPOSITORIES[/cyan] - Local repository paths
• [cyan]DEP_CONVERGE_REMOTE_URL[/cyan] - Remote Maven repository
• [cyan]DEP_CONVERGE_MAX_CONCURRENT[/cyan] - Concurrent manifest fetches
• [cyan]DEP_CONVERGE_SCOPES[/cyan] - Comma separated scopes to include
• [cyan]DEP_CONVERGE_FAIL_ON_CONFLICT[/cyan] - Fail when versions diverge

[bold blue]📄 Configuration Files:[/bold blue]

• [green].dep-converge.json[/green] / [green].dep-converge.yaml[/green] - Project-level config
• [green]~/.config/dep-converge/config.json[/green] - User-level config

[bold blue]💡 Usage Examples:[/bold blue]

  # Resolve a project
  dep-converge resolve pom.xml -r ~/.m2/repository

  # Show the tree with conflicts
  dep-converge tree pom.xml

  # Fail the build on divergent versions
  dep-converge check pom.xml

  # Shade Guava into a private namespace
  dep-converge relocate guava-10.0.jar --relocate com.google.common=shaded.guava10
"""
    console.print(
        Panel(
            info_text,
            title="[bold]dep-converge Information[/bold]",
            border_style="blue",
        )
    )


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command("init")
@click.option(
    "--path",
    type=click.Path(),
    default=".dep-converge.json",
    help="Path where to create the config file",
    show_default=True,
)
@click.option("--force", is_flag=True, help="Overwrite existing config file")
def config_init(path: str, force: bool):
    """Create a sample configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        console.print(
            f"⚠️  Config file already exists at {escape(str(config_path))}", style="yellow"
        )
        console.print("Use --force to overwrite", style="dim")
        return

    try:
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(create_sample_config())
    except OSError as e:
        console.print(f"❌ Failed to create config file: {escape(str(e))}", style="red")
        sys.exit(1)

    console.print(f"✅ Created configuration file at {escape(str(config_path))}", style="green")
    console.print("Edit this file to customize your settings", style="dim")


@config.command("show")
def config_show():
    """Show current configuration settings."""
    current_config = get_config()

    console.print(Panel("[bold blue]🔧 Configuration[/bold blue]", border_style="blue"))

    console.print("\n[bold cyan]⚖️  Resolve Settings:[/bold cyan]")
    console.print(f"  Max Concurrent: {current_config.resolve.max_concurrent}")
    console.print(f"  Fetch Timeout: {current_config.resolve.fetch_timeout_seconds}s")
    console.print(f"  Scopes: {', '.join(current_config.resolve.scopes)}")
    console.print(f"  Fail on Conflict: {current_config.resolve.fail_on_conflict}")
    console.print(f"  Output Format: {current_config.resolve.output_format}")

    console.print("\n[bold cyan]📦 Repository Settings:[/bold cyan]")
    for path in current_config.repository.local_paths:
        console.print(f"  Local: {escape(str(path))}")
    console.print(f"  Remote: {escape(current_config.repository.remote_url or '-')}")
    console.print(f"  Rate Limit: {current_config.repository.rate_limit} req/s")
    console.print(f"  Connect Timeout: {current_config.repository.connect_timeout}s")
    console.print(f"  Read Timeout: {current_config.repository.read_timeout}s")
    console.print(f"  User Agent: {escape(current_config.repository.user_agent)}")

    console.print("\n[bold cyan]🔀 Relocation Settings:[/bold cyan]")
    console.print(
        f"  Rewrite String Literals: {current_config.relocation.rewrite_string_literals}"
    )
    console.print(f"  Rewrite Services: {current_config.relocation.rewrite_services}")
    console.print(f"  Max Workers: {current_config.relocation.max_workers}")
    console.print(f"  Default Prefix: {current_config.relocation.default_prefix}")

    console.print("\n[bold cyan]🔒 Security Settings:[/bold cyan]")
    console.print(f"  Max File Size: {current_config.security.max_file_size_mb} MB")
    console.print(
        f"  Allowed Extensions: {', '.join(current_config.security.allowed_file_extensions)}"
    )

    console.print("\n[bold cyan]📝 Logging Settings:[/bold cyan]")
    console.print(f"  Log Level: {current_config.logging.log_level}")
    console.print(f"  JSON Logs: {current_config.logging.enable_json}")


@config.command("validate")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
def config_validate(config_file: str):
    """Validate a configuration file."""
    config_data = load_config_file(Path(config_file))

    if not isinstance(config_data, dict):
        console.print(f"❌ Could not load config from {escape(config_file)}", style="red")
        sys.exit(1)

    candidate = ComprehensiveConfig()
    for section, values in config_data.items():
        if not hasattr(candidate, section) or not isinstance(values, dict):
            console.print(f"❌ Unknown config section: {escape(str(section))}", style="red")
            sys.exit(1)
        apply_config_section(getattr(candidate, section), values, section)

    try:
        errors = validate_config_values(candidate)
    except TypeError as e:
        errors = [f"wrong value type: {e}"]

    if errors:
        console.print("❌ Configuration validation failed:", style="red")
        for error in errors:
            console.print(f"  • {escape(error)}", style="red")
        sys.exit(1)

    console.print(f"✅ Configuration file {escape(config_file)} is valid", style="green")


if __name__ == "__main__":
    cli()

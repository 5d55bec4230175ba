"""
CLI commands for kv-relations.

Provides the `kvr` command-line interface for checking the store and for
auditing, repairing and rebuilding the derived structures of a model type.
Model types come from a registry factory given as module:callable; the
callable receives a RedisStoreClient and returns a ModelRegistry.
"""

import asyncio
import importlib
import json
import logging
import sys
from typing import Any, Callable, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kv_relations import __version__
from config.loader import ConfigurationLoader
from core.audit import AuditEngine, AuditReport, RepairEngine
from core.errors import ConfigurationError
from core.models.audit import AuditStatus
from core.models.config import StoreConfig
from core.records.registry import ModelRegistry
from core.storage.client import RedisStoreClient

console = Console()

RegistryFactory = Callable[[RedisStoreClient], ModelRegistry]


@click.group()
@click.version_option(version=__version__, prog_name="kvr")
@click.option(
    '--config', 'config_path',
    type=click.Path(dir_okay=False),
    help='Config file (default: ./kv-relations.json if present)'
)
@click.option(
    '--redis-url',
    help='Redis URL, overrides the config file'
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], redis_url: Optional[str]):
    """
    kv-relations CLI.

    Audit and repair indexes, timelines and participation collections.
    """
    try:
        config = ConfigurationLoader().load_config(config_path)
        if redis_url:
            config.redis.url = redis_url
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        sys.exit(2)

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    ctx.obj = {"config": config}


def _registry_option(func):
    return click.option(
        '--registry', 'registry_path',
        envvar='KVR_REGISTRY',
        required=True,
        help='Registry factory as module:callable (env: KVR_REGISTRY)'
    )(func)


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Check the Redis connection and show the active configuration."""
    config: StoreConfig = ctx.obj["config"]
    console.print("[blue]🔍 Checking kv-relations status...[/blue]\n")

    health = asyncio.run(_run_status(config))

    table = Table(title="kv-relations Status")
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    if health["status"] == "healthy":
        table.add_row("Redis", "[green]✅ Connected[/green]",
                      f"{config.redis.url} ({health['keys']} keys, {health['response_time_ms']:.1f}ms)")
    else:
        table.add_row("Redis", "[red]❌ Not available[/red]", f"{config.redis.url}: {health['error']}")

    table.add_row("Batch size", f"[yellow]{config.audit.batch_size}[/yellow]", "SCAN page size")
    table.add_row("Sample size", f"[yellow]{config.audit.sample_size or 'all'}[/yellow]",
                  "Members checked per multi-index value")
    table.add_row("Rebuild threshold", f"[yellow]{config.audit.rebuild_threshold}[/yellow]",
                  "Findings before an index is rebuilt")
    table.add_row("Package", "[green]✅ Installed[/green]", f"v{__version__}")
    console.print(table)

    if health["status"] != "healthy":
        sys.exit(1)


@main.command()
@click.argument('model')
@_registry_option
@click.option('--batch-size', type=click.IntRange(min=1), help='SCAN page size')
@click.option('--sample-size', type=click.IntRange(min=1), help='Members checked per value set')
@click.option('--json', 'as_json', is_flag=True, help='Print the report as JSON')
@click.pass_context
def audit(ctx: click.Context, model: str, registry_path: str, batch_size: Optional[int],
          sample_size: Optional[int], as_json: bool):
    """Audit one model type (read-only). Exits 1 when problems are found."""
    config: StoreConfig = ctx.obj["config"]
    factory = _load_registry_factory(registry_path)

    try:
        report = asyncio.run(_run_audit(config, factory, model, batch_size, sample_size))
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(2)

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)

    if not report.healthy:
        sys.exit(1)


@main.command()
@click.argument('model')
@_registry_option
@click.option('--batch-size', type=click.IntRange(min=1), help='Commands per repair pipeline')
@click.option('--threshold', type=click.IntRange(min=0), help='Findings before an index is rebuilt')
@click.option('--force-rebuild', is_flag=True, help='Rebuild every index regardless of findings')
@click.option('--json', 'as_json', is_flag=True, help='Print the summary as JSON')
@click.pass_context
def repair(ctx: click.Context, model: str, registry_path: str, batch_size: Optional[int],
           threshold: Optional[int], force_rebuild: bool, as_json: bool):
    """Audit and repair one model type."""
    config: StoreConfig = ctx.obj["config"]
    factory = _load_registry_factory(registry_path)

    if not as_json:
        console.print(f"[blue]🔧 Repairing {model}...[/blue]")

    try:
        summary = asyncio.run(_run_repair(config, factory, model, batch_size, threshold, force_rebuild))
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(2)

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        console.print(f"Timeline: {summary.instances.phantoms_removed} phantoms removed, "
                      f"{summary.instances.missing_added} missing added")
        console.print(f"Indexes rebuilt: {', '.join(summary.indexes.rebuilt) or 'none'}")
        if summary.indexes.patched:
            console.print(f"Indexes patched: {summary.indexes.patched}")
        console.print(f"Participations: {summary.participations.stale_removed} stale members removed")
        _print_report(summary.report)

    if not summary.report.healthy:
        sys.exit(1)


@main.command()
@click.argument('model')
@_registry_option
@click.option('--batch-size', type=click.IntRange(min=1), help='SCAN page size')
@click.pass_context
def rebuild(ctx: click.Context, model: str, registry_path: str, batch_size: Optional[int]):
    """Rebuild the identifier timeline of one model type from the keyspace."""
    config: StoreConfig = ctx.obj["config"]
    factory = _load_registry_factory(registry_path)

    try:
        count = asyncio.run(_run_rebuild(config, factory, model, batch_size))
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(2)

    console.print(f"[green]✅ Rebuilt {model} timeline with {count} identifiers[/green]")


async def _run_status(config: StoreConfig) -> Dict[str, Any]:
    client = RedisStoreClient.from_config(config.redis)
    try:
        return await client.health_check()
    finally:
        await client.close()


async def _with_registry(config: StoreConfig, factory: RegistryFactory, action):
    client = RedisStoreClient.from_config(config.redis)
    registry = factory(client)
    try:
        return await action(registry)
    finally:
        await registry.client.close()
        if registry.client is not client:
            await client.close()


async def _run_audit(config: StoreConfig, factory: RegistryFactory, model: str,
                     batch_size: Optional[int], sample_size: Optional[int]) -> AuditReport:
    engine = AuditEngine(config.audit)

    async def action(registry: ModelRegistry) -> AuditReport:
        return await engine.health_check(registry.get(model), batch_size, sample_size)

    return await _with_registry(config, factory, action)


async def _run_repair(config: StoreConfig, factory: RegistryFactory, model: str,
                      batch_size: Optional[int], threshold: Optional[int], force_rebuild: bool):
    engine = RepairEngine(config.audit)

    async def action(registry: ModelRegistry):
        return await engine.repair_all(
            registry.get(model),
            batch_size=batch_size,
            rebuild_threshold=threshold,
            force_rebuild=force_rebuild
        )

    return await _with_registry(config, factory, action)


async def _run_rebuild(config: StoreConfig, factory: RegistryFactory, model: str,
                       batch_size: Optional[int]) -> int:
    engine = RepairEngine(config.audit)

    async def action(registry: ModelRegistry) -> int:
        return await engine.rebuild_instances(registry.get(model), batch_size)

    return await _with_registry(config, factory, action)


def _load_registry_factory(path: str) -> RegistryFactory:
    """Resolve module:callable to a registry factory"""
    module_name, _, attribute = path.partition(':')
    if not module_name or not attribute:
        raise click.BadParameter(f"expected module:callable, got {path!r}", param_hint='--registry')
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise click.BadParameter(f"cannot import {module_name}: {e}", param_hint='--registry')
    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise click.BadParameter(f"{path} is not callable", param_hint='--registry')
    return factory


def _status_cell(status: AuditStatus, findings: int) -> str:
    if status is AuditStatus.NOT_IMPLEMENTED:
        return "[yellow]⚠️  not implemented[/yellow]"
    if findings:
        return f"[red]❌ {findings} findings[/red]"
    return "[green]✅ clean[/green]"


def _print_report(report: AuditReport) -> None:
    table = Table(title=f"Audit: {report.model_name}")
    table.add_column("Dimension", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    instances = report.instances
    table.add_row(
        "Instances", "timeline", _status_cell(instances.status, instances.finding_count),
        f"{instances.count_timeline} in timeline, {instances.count_scan} in keyspace, "
        f"phantoms: {', '.join(instances.phantoms) or '-'}; missing: {', '.join(instances.missing) or '-'}"
    )
    for label, audits in (("Unique index", report.unique_indexes), ("Multi index", report.multi_indexes)):
        for index_audit in audits:
            table.add_row(
                label, index_audit.index_name,
                _status_cell(index_audit.status, index_audit.finding_count),
                f"{len(index_audit.stale)} stale, {len(index_audit.missing)} missing, "
                f"{len(index_audit.orphaned_keys)} orphaned"
            )
    for participation in report.participations:
        table.add_row(
            "Participation", participation.collection,
            _status_cell(participation.status, participation.finding_count),
            f"{participation.collections_checked} collections, {participation.members_checked} members, "
            f"{len(participation.stale_members)} stale"
        )
    console.print(table)

    health = "[green]✅ healthy[/green]" if report.healthy else "[red]❌ unhealthy[/red]"
    complete = "complete" if report.complete else "[yellow]incomplete[/yellow]"
    console.print(f"\n{health}, {complete} ({report.duration:.3f}s)")


if __name__ == "__main__":
    main()

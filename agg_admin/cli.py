"""
Admin CLI for managing the node registry.

Provides CRUD commands on registered CI nodes, working directly on the
registry store (the server does not need to be running).
"""

import asyncio
import json
import os
import sys
from pathlib import Path

import click

from agg_adapters import ADAPTER_KINDS
from agg_common.errors import AggregatorError
from agg_common.models import Node
from agg_engine.registry import NodeRegistry
from agg_persistence.sqlite_repository import SQLiteNodeRepository


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("AGG_DB_PATH", str(Path.home() / ".agg" / "nodes.db"))


def get_repository() -> SQLiteNodeRepository:
    """Get the repository instance."""
    db_path = get_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return SQLiteNodeRepository(db_path)


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


async def with_registry(action):
    """Open the store, run action(registry), close the store."""
    repo = get_repository()
    await repo.initialize()
    try:
        return await action(NodeRegistry(repo, supported_kinds=set(ADAPTER_KINDS)))
    except AggregatorError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        await repo.close()


def echo_node(node: Node) -> None:
    click.echo(f"  ID:      {node.id}")
    click.echo(f"  Name:    {node.name or '-'}")
    click.echo(f"  Address: {node.host}:{node.port}")
    click.echo(f"  Account: {node.account}")
    click.echo(f"  Kind:    {node.kind}")


@click.group()
def cli():
    """Aggregator Admin - Manage the CI nodes behind the aggregator."""
    pass


@cli.group()
def node():
    """Manage registered nodes."""
    pass


@node.command("add")
@click.option("--host", required=True, help="Node host name")
@click.option("--port", required=True, type=int, help="Node port")
@click.option("--account", required=True, help="Account used to call the node")
@click.option(
    "--password",
    prompt=True,
    hide_input=True,
    help="Password or API token for the account",
)
@click.option(
    "--kind",
    default="jenkins",
    type=click.Choice(sorted(ADAPTER_KINDS)),
    help="Remote CI family",
)
@click.option("--name", default=None, help="Display name")
def node_add(host: str, port: int, account: str, password: str, kind: str, name: str | None):
    """Register a new node."""

    async def add(registry: NodeRegistry):
        node_obj = Node(
            id="",
            host=host,
            port=port,
            account=account,
            kind=kind,
            name=name,
            credential=password or None,
        )
        node_id = await registry.add(node_obj)
        click.echo("✓ Node registered successfully")
        echo_node(await registry.get(node_id))

    run_async(with_registry(add))


@node.command("list")
@click.option("--host", default=None, help="Only nodes whose host contains this text")
@click.option("--account", default=None, help="Only nodes with this account")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def node_list(host: str | None, account: str | None, json_output: bool):
    """List registered nodes (credentials are never shown)."""

    async def list_nodes(registry: NodeRegistry):
        nodes = await registry.list(host=host, account=account)

        if json_output:
            click.echo(json.dumps([n.to_dict() for n in nodes], indent=2))
            return

        if not nodes:
            click.echo("No nodes found.")
            return

        click.echo(f"\n{'ID':<38} {'Address':<30} {'Account':<15} {'Kind':<10}")
        click.echo("-" * 95)
        for n in nodes:
            address = f"{n.host}:{n.port}"
            click.echo(f"{n.id:<38} {address:<30} {n.account:<15} {n.kind:<10}")
        click.echo()

    run_async(with_registry(list_nodes))


@node.command("get")
@click.argument("node_id")
def node_get(node_id: str):
    """Show node details."""

    async def get(registry: NodeRegistry):
        node_obj = await registry.get(node_id)
        click.echo("\nNode Details:")
        echo_node(node_obj)
        click.echo()

    run_async(with_registry(get))


@node.command("update")
@click.argument("node_id")
@click.option("--host", default=None, help="New host name")
@click.option("--port", default=None, type=int, help="New port")
@click.option("--account", default=None, help="New account")
@click.option("--password", default=None, help="New password or API token")
@click.option("--name", default=None, help="New display name")
def node_update(
    node_id: str,
    host: str | None,
    port: int | None,
    account: str | None,
    password: str | None,
    name: str | None,
):
    """Update fields of a node."""
    patch = {
        "host": host,
        "port": port,
        "account": account,
        "credential": password,
        "name": name,
    }
    if all(value is None for value in patch.values()):
        click.echo("Error: Nothing to update", err=True)
        sys.exit(1)

    async def update(registry: NodeRegistry):
        node_obj = await registry.update(node_id, patch)
        click.echo("✓ Node updated")
        echo_node(node_obj)

    run_async(with_registry(update))


@node.command("remove")
@click.argument("node_id")
def node_remove(node_id: str):
    """Remove a node from the registry."""

    async def remove(registry: NodeRegistry):
        node_obj = await registry.get(node_id)
        await registry.remove(node_id)
        click.echo(f"✓ Node removed: {node_obj.account}@{node_obj.host}:{node_obj.port}")

    run_async(with_registry(remove))


if __name__ == "__main__":
    cli()

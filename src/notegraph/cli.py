"""CLI for the notegraph knowledge graph.

State lives in the SQLite cache of the data directory, so commands can be
chained: ingest once, then query.
"""

import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .config import configure_logging, load_settings
from .engine import KnowledgeGraph
from .errors import GraphError
from .export import FORMATS
from .models import ConnectionType, NodeKind

console = Console()

DEFAULT_DATA_DIR = Path(".notegraph")


def _open_graph(ctx) -> KnowledgeGraph:
    settings = load_settings(
        path=ctx.obj["config"],
        data_dir=ctx.obj["data_dir"],
        workers=0,
        log_level=ctx.obj["log_level"],
    )
    configure_logging(settings)
    return KnowledgeGraph(settings)


def _fail(ctx, error) -> None:
    console.print(f"[red]Error:[/red] {error}")
    ctx.exit(1)


@click.group()
@click.option(
    "--data-dir",
    envvar="NOTEGRAPH_DATA_DIR",
    type=click.Path(path_type=Path),
    default=DEFAULT_DATA_DIR,
    show_default=True,
    help="Directory holding the graph cache and log",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Settings file (default: notegraph.yaml in the data dir)",
)
@click.option("--log-level", default=None, help="Logging level (default: WARNING)")
@click.pass_context
def cli(ctx, data_dir, config, log_level):
    """Notegraph - knowledge graph of notes and people."""
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    ctx.obj["config"] = config
    ctx.obj["log_level"] = log_level or "WARNING"


@cli.command()
@click.argument("file", type=click.File("r"))
@click.pass_context
def ingest(ctx, file):
    """Load people and notes from a JSON file.

    \b
    Format:
        {"people": [{"id": "p1", "names": ["Alice Smith", "Ali"]}],
         "notes":  [{"id": "n1", "title": "Lunch", "content": "...", "version": 1}],
         "links":  [{"source": "n1", "target": "p1", "type": "assigned_to"}]}

    Records already in the graph with the same version are left alone.
    """
    try:
        data = json.load(file)
    except json.JSONDecodeError as e:
        _fail(ctx, f"Invalid JSON: {e}")
        return

    with _open_graph(ctx) as kg:
        try:
            for person in data.get("people", []):
                kg.on_person_changed(person["id"], person["names"])
            for note in data.get("notes", []):
                kg.on_note_changed(
                    note["id"],
                    note.get("content", ""),
                    version=note.get("version"),
                    title=note.get("title"),
                )
            kg.wait_idle()
            for link in data.get("links", []):
                kg.update_connections(link["source"], [link])
        except (GraphError, KeyError) as e:
            _fail(ctx, e)
            return
        stats = kg.get_stats()

    console.print(
        f"[green]✓[/green] Graph has [bold]{stats['node_count']}[/bold] nodes "
        f"and [bold]{stats['edge_count']}[/bold] edges"
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx, as_json):
    """Show graph statistics."""
    with _open_graph(ctx) as kg:
        data = kg.get_stats()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    table = Table(title="Graph statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key in ("node_count", "note_count", "person_count", "edge_count",
                "strong_edge_count", "average_degree", "average_strength"):
        table.add_row(key.replace("_", " "), str(data[key]))
    for type_name, count in data["edge_count_by_type"].items():
        table.add_row(f"  {type_name}", str(count))
    if data["most_connected"]:
        mc = data["most_connected"]
        table.add_row("most connected", f"{mc['id']} ({mc['degree']})")
    console.print(table)


@cli.command()
@click.argument("query")
@click.option("--kind", type=click.Choice([k.value for k in NodeKind]), help="Only this node kind")
@click.option("-n", "--limit", type=int, default=None, help="Max results")
@click.pass_context
def search(ctx, query, kind, limit):
    """Search nodes by title or name."""
    with _open_graph(ctx) as kg:
        try:
            hits = kg.search(query, kind=NodeKind(kind) if kind else None, limit=limit)
        except GraphError as e:
            _fail(ctx, e)
            return

    if not hits:
        console.print("[dim]No matches[/dim]")
        return

    table = Table()
    table.add_column("ID", style="yellow")
    table.add_column("Kind")
    table.add_column("Title")
    table.add_column("Strength", justify="right")
    table.add_column("Degree", justify="right")
    for hit in hits:
        table.add_row(hit.node.id, hit.node.kind.value, hit.node.title, f"{hit.strength:.2f}", str(hit.degree))
    console.print(table)


@cli.command()
@click.argument("node_id")
@click.pass_context
def neighbors(ctx, node_id):
    """List a node's connections, strongest first."""
    with _open_graph(ctx) as kg:
        try:
            edges = kg.get_node_connections(node_id)
            nodes = {n.id: n for n in kg.neighbors(node_id)}
        except GraphError as e:
            _fail(ctx, e)
            return

    if not edges:
        console.print(f"[dim]{node_id} has no connections[/dim]")
        return

    for edge in edges:
        other = nodes.get(edge.other_node(node_id))
        label = other.title if other else edge.other_node(node_id)
        arrow = "<->" if not edge.type.directed else ("->" if edge.source == node_id else "<-")
        console.print(
            f"  {arrow} [cyan]{label}[/cyan] [dim]{edge.type.value} {edge.strength:.2f}[/dim]"
        )


@cli.command()
@click.argument("node_id")
@click.option("-d", "--depth", type=int, default=1, show_default=True, help="Hops from the node")
@click.option("--max-nodes", type=int, default=None, help="Cap on nodes returned")
@click.pass_context
def subgraph(ctx, node_id, depth, max_nodes):
    """Print the neighborhood of a node as JSON."""
    with _open_graph(ctx) as kg:
        try:
            result = kg.get_subgraph(node_id, depth, max_nodes)
        except GraphError as e:
            _fail(ctx, e)
            return
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command()
@click.option("-f", "--format", "fmt", type=click.Choice(FORMATS), default="json", show_default=True)
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), help="Write to file")
@click.option("--root", default=None, help="Export only the subgraph around this node")
@click.option("-d", "--depth", type=int, default=None, help="Depth of the subgraph export")
@click.pass_context
def export(ctx, fmt, output, root, depth):
    """Export the graph as JSON, Cypher or GEXF."""
    with _open_graph(ctx) as kg:
        try:
            payload = kg.export_graph(fmt, root=root, depth=depth)
        except GraphError as e:
            _fail(ctx, e)
            return

    if output:
        output.write_text(payload)
        console.print(f"[green]✓[/green] Exported to {output}")
    else:
        click.echo(payload, nl=False)


@cli.command()
@click.argument("source")
@click.argument("target")
@click.option(
    "-t", "--type", "type_",
    type=click.Choice([t.value for t in ConnectionType if t.manual]),
    default=ConnectionType.EXPLICIT_LINK.value,
    show_default=True,
)
@click.option("-s", "--strength", type=float, default=1.0, show_default=True)
@click.option("--remove", is_flag=True, help="Remove the link instead")
@click.pass_context
def link(ctx, source, target, type_, strength, remove):
    """Add (or remove) a user-declared connection."""
    with _open_graph(ctx) as kg:
        try:
            if remove:
                removed = kg.remove_connection(source, target, type_)
            else:
                kg.update_connections(source, [{"target": target, "type": type_, "strength": strength}])
        except GraphError as e:
            _fail(ctx, e)
            return

    if remove and not removed:
        console.print(f"[yellow]![/yellow] No {type_} link from {source} to {target}")
    elif remove:
        console.print(f"[green]✓[/green] Removed {type_} link {source} -> {target}")
    else:
        console.print(f"[green]✓[/green] Linked {source} -> {target} ({type_})")


if __name__ == "__main__":
    cli()

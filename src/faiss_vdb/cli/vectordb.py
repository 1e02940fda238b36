"""CLI entry points for vector collection management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import typer
from pydantic import BaseModel, ValidationError

from faiss_vdb.container import build_container
from faiss_vdb.errors import VdbError
from faiss_vdb.models import IndexKind, IndexParams, Metric, VectorRecord

if TYPE_CHECKING:
    from faiss_vdb.container import Container

app = typer.Typer(help="Manage local vector collections and run similarity searches.")

_DATABASE_HELP = "Database namespace; defaults to VDB_DEFAULT_DATABASE."


def _container() -> Container:
    """Build the container or exit with a user-facing error."""
    try:
        return build_container()
    except (VdbError, ValueError) as exc:
        _abort("Failed to initialize container", exc)


def _abort(prefix: str, exc: Exception) -> NoReturn:
    typer.echo(f"{prefix}: {exc}", err=True)
    raise typer.Exit(code=1) from exc


def _database(container: Container, database: str | None) -> str:
    return database if database is not None else container.settings.default_database


def _emit(payload: Any) -> None:
    """Print ``payload`` as indented JSON on stdout."""
    if isinstance(payload, BaseModel):
        typer.echo(payload.model_dump_json(indent=2))
        return
    if isinstance(payload, list):
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in payload]
    typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))


def _read_records(path: Path) -> list[VectorRecord]:
    """Load records from a JSON array or a JSON-lines file."""
    text = path.read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        rows = json.loads(text)
    else:
        rows = [json.loads(line) for line in text.splitlines() if line.strip()]
    return [VectorRecord.model_validate(row) for row in rows]


@app.command()
def create(
    name: str = typer.Argument(..., help="Collection name."),
    dimension: int = typer.Option(..., "--dimension", "-d", help="Vector dimension."),
    metric: Metric | None = typer.Option(None, "--metric", "-m", help="Distance metric."),
    kind: IndexKind | None = typer.Option(None, "--kind", help="Index kind."),
    nlist: int | None = typer.Option(None, "--nlist", help="Number of IVF clusters."),
    nprobe: int | None = typer.Option(None, "--nprobe", help="Clusters probed per IVF search."),
    pq_m: int | None = typer.Option(None, "--pq-m", help="PQ sub-quantizers."),
    pq_nbits: int | None = typer.Option(None, "--pq-nbits", help="Bits per PQ code."),
    train_size: int | None = typer.Option(None, "--train-size", help="Records required before training."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Create an empty collection."""
    container = _container()
    overrides = {
        "nlist": nlist,
        "nprobe": nprobe,
        "pq_m": pq_m,
        "pq_nbits": pq_nbits,
        "train_size": train_size,
    }
    defaults = container.settings.index_params().model_dump()
    defaults.update({key: value for key, value in overrides.items() if value is not None})
    try:
        created = container.manager.create_collection(
            name,
            _database(container, database),
            dimension,
            metric=metric,
            kind=kind,
            params=IndexParams.model_validate(defaults),
        )
    except (VdbError, ValueError) as exc:
        _abort("Failed to create collection", exc)
    _emit(created)


@app.command()
def drop(
    name: str = typer.Argument(..., help="Collection name."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Drop a collection; dropping a missing collection is not an error."""
    container = _container()
    try:
        status = container.manager.drop_collection(name, _database(container, database))
    except (VdbError, ValueError) as exc:
        _abort("Failed to drop collection", exc)
    _emit({"collection": name, "status": status.value})


@app.command("list")
def list_collections(
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """List the collections of a database."""
    container = _container()
    try:
        names = container.manager.list_collections(_database(container, database))
    except (VdbError, ValueError) as exc:
        _abort("Failed to list collections", exc)
    _emit(sorted(names))


@app.command()
def insert(
    name: str = typer.Argument(..., help="Collection name."),
    file: Path = typer.Option(..., "--file", "-f", help="JSON array or JSON-lines file of records."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Insert (or replace) records read from ``file``."""
    try:
        records = _read_records(file)
    except ValidationError as exc:
        typer.echo(exc.json(), err=True)
        raise typer.Exit(code=1) from exc
    except (OSError, json.JSONDecodeError) as exc:
        _abort("Failed to read records", exc)
    container = _container()
    try:
        written = container.manager.insert(name, records, _database(container, database))
    except (VdbError, ValueError) as exc:
        _abort("Failed to insert records", exc)
    _emit({"collection": name, "inserted": written})


@app.command()
def delete(
    name: str = typer.Argument(..., help="Collection name."),
    ids: list[str] = typer.Option(..., "--id", "-i", help="Record identifier; repeat for several."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Delete records by identifier."""
    container = _container()
    try:
        removed = container.manager.delete(name, ids, _database(container, database))
    except (VdbError, ValueError) as exc:
        _abort("Failed to delete records", exc)
    _emit({"collection": name, "deleted": removed})


@app.command()
def search(
    name: str = typer.Argument(..., help="Collection name."),
    vector: str = typer.Option(..., "--vector", "-v", help="Query vector as a JSON array."),
    limit: int = typer.Option(10, "--limit", "-k", help="Number of hits to return."),
    offset: int = typer.Option(0, "--offset", help="Number of ranked hits to skip."),
    filters: str = typer.Option("", "--filter", help="Metadata filter expression."),
    metric: Metric | None = typer.Option(None, "--metric", "-m", help="Override the collection metric."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Rank records by similarity to a query vector."""
    try:
        query_vector = json.loads(vector)
    except json.JSONDecodeError as exc:
        _abort("Invalid JSON", exc)
    if not isinstance(query_vector, list):
        typer.echo("Query vector must be a JSON array of numbers", err=True)
        raise typer.Exit(code=1)
    container = _container()
    try:
        hits = container.manager.search(
            name,
            query_vector,
            _database(container, database),
            limit=limit,
            offset=offset,
            filters=filters,
            metric=metric,
        )
    except (VdbError, ValueError) as exc:
        _abort("Search failed", exc)
    _emit(hits)


@app.command()
def query(
    name: str = typer.Argument(..., help="Collection name."),
    filters: str = typer.Option("", "--filter", help="Metadata filter expression."),
    limit: int = typer.Option(10, "--limit", "-k", help="Number of records to return."),
    offset: int = typer.Option(0, "--offset", help="Number of matching records to skip."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Return records matching a metadata filter in insertion order."""
    container = _container()
    try:
        hits = container.manager.query(
            name,
            _database(container, database),
            filters=filters,
            limit=limit,
            offset=offset,
        )
    except (VdbError, ValueError) as exc:
        _abort("Query failed", exc)
    _emit(hits)


@app.command()
def rebuild(
    name: str = typer.Argument(..., help="Collection name."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Retrain the auxiliary index structure of a collection."""
    container = _container()
    try:
        rebuilt = container.manager.rebuild(name, _database(container, database))
    except (VdbError, ValueError) as exc:
        _abort("Failed to rebuild index", exc)
    _emit(rebuilt)


@app.command()
def info(
    name: str = typer.Argument(..., help="Collection name."),
    database: str | None = typer.Option(None, "--database", "-D", help=_DATABASE_HELP),
) -> None:
    """Describe a collection."""
    container = _container()
    try:
        description = container.manager.describe(name, _database(container, database))
    except (VdbError, ValueError) as exc:
        _abort("Failed to describe collection", exc)
    _emit(description)


@app.command()
def ping() -> None:
    """Check that the index directory is usable."""
    container = _container()
    reachable = container.provider.ping()
    _emit({"ok": reachable, **container.provider.get_connection_data()})
    if not reachable:
        raise typer.Exit(code=1)

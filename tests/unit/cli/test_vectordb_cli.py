"""Tests for the ``vdb`` CLI commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from faiss_vdb.cli import vectordb as vectordb_cli
from faiss_vdb.container import Container, build_container
from faiss_vdb.settings import Settings

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def runner() -> CliRunner:
    """Return a Typer CLI runner."""
    return CliRunner()


@pytest.fixture
def index_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the CLI container at a temporary index directory."""
    target = tmp_path / "indexes"

    def _build() -> Container:
        return build_container(Settings(index_path=target, log_level="WARNING"))

    monkeypatch.setattr(vectordb_cli, "build_container", _build)
    return target


def _invoke(runner: CliRunner, *args: str) -> object:
    result = runner.invoke(vectordb_cli.app, list(args))
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def _write_records(path: Path) -> Path:
    rows = [
        {"id": "a", "vector": [1.0, 0.0, 0.0], "metadata": {"site": "docs"}},
        {"id": "b", "vector": [0.0, 1.0, 0.0], "metadata": {"site": "blog"}},
    ]
    path.write_text("\n".join(json.dumps(row) for row in rows), encoding="utf-8")
    return path


def test_create_prints_collection_info(runner: CliRunner, index_path: Path) -> None:
    payload = _invoke(runner, "create", "docs", "--dimension", "3", "--metric", "cosine", "-D", "site")

    assert payload["name"] == "docs"
    assert payload["database"] == "site"
    assert payload["metric"] == "cosine"
    assert (index_path / "site_docs.fvdb").is_file()


def test_insert_search_and_query(runner: CliRunner, index_path: Path, tmp_path: Path) -> None:
    _invoke(runner, "create", "docs", "--dimension", "3")
    records = _write_records(tmp_path / "records.jsonl")

    inserted = _invoke(runner, "insert", "docs", "--file", str(records))
    hits = _invoke(runner, "search", "docs", "--vector", "[1, 0, 0]", "--limit", "1")
    matches = _invoke(runner, "query", "docs", "--filter", "site == 'blog'")

    assert inserted == {"collection": "docs", "inserted": 2}
    assert hits[0]["id"] == "a"
    assert hits[0]["distance"] == 0.0
    assert [match["id"] for match in matches] == ["b"]


def test_list_delete_info_and_drop(runner: CliRunner, index_path: Path, tmp_path: Path) -> None:
    _invoke(runner, "create", "docs", "--dimension", "3")
    _invoke(runner, "create", "faq", "--dimension", "3")
    _invoke(runner, "insert", "docs", "--file", str(_write_records(tmp_path / "records.jsonl")))

    assert _invoke(runner, "list") == ["docs", "faq"]
    assert _invoke(runner, "delete", "docs", "--id", "a", "--id", "zzz") == {"collection": "docs", "deleted": 1}
    assert _invoke(runner, "info", "docs")["count"] == 1
    assert _invoke(runner, "rebuild", "docs")["state"] == "clean"
    assert _invoke(runner, "drop", "docs") == {"collection": "docs", "status": "dropped"}
    assert _invoke(runner, "drop", "docs") == {"collection": "docs", "status": "not_found"}
    assert _invoke(runner, "list") == ["faq"]


def test_ping_reports_index_path(runner: CliRunner, index_path: Path) -> None:
    payload = _invoke(runner, "ping")

    assert payload["ok"] is True
    assert payload["index_path"] == str(index_path)


def test_search_on_missing_collection_fails(runner: CliRunner, index_path: Path) -> None:
    result = runner.invoke(vectordb_cli.app, ["search", "ghost", "--vector", "[0, 0, 0]"])

    assert result.exit_code == 1
    assert "Search failed" in result.output


def test_invalid_filter_fails(runner: CliRunner, index_path: Path) -> None:
    _invoke(runner, "create", "docs", "--dimension", "3")

    result = runner.invoke(vectordb_cli.app, ["query", "docs", "--filter", "site =="])

    assert result.exit_code == 1
    assert "Query failed" in result.output


def test_insert_with_invalid_records_fails(runner: CliRunner, index_path: Path, tmp_path: Path) -> None:
    records = tmp_path / "records.json"
    records.write_text(json.dumps([{"id": "a"}]), encoding="utf-8")

    result = runner.invoke(vectordb_cli.app, ["insert", "docs", "--file", str(records)])

    assert result.exit_code == 1
    assert "vector" in result.output


def test_search_rejects_non_array_vector(runner: CliRunner, index_path: Path) -> None:
    result = runner.invoke(vectordb_cli.app, ["search", "docs", "--vector", '{"x": 1}'])

    assert result.exit_code == 1
    assert "JSON array" in result.output


def test_build_container_error(monkeypatch: pytest.MonkeyPatch, runner: CliRunner) -> None:
    """Container validation errors produce a user-facing failure."""

    def _raise_value_error() -> None:
        raise ValueError("unknown vector backend: bogus")

    monkeypatch.setattr(vectordb_cli, "build_container", _raise_value_error)

    result = runner.invoke(vectordb_cli.app, ["list"])

    assert result.exit_code == 1
    assert "Failed to initialize container: unknown vector backend: bogus" in result.output

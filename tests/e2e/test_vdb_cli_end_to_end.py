"""End-to-end tests exercising the Typer CLI against real index files."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from typer.testing import CliRunner

from faiss_vdb.cli import vectordb as vectordb_cli
from faiss_vdb.vectordb import persistence

if TYPE_CHECKING:
    from pathlib import Path


def test_ivf_collection_lifecycle_via_cli(tmp_path: Path) -> None:
    """Records inserted through the CLI survive reloads and train an IVF index."""
    index_path = tmp_path / "indexes"
    env = {
        "VDB_INDEX_PATH": str(index_path),
        "VDB_LOG_LEVEL": "WARNING",
        "VDB_INDEX_KIND": "ivf_flat",
        "VDB_NLIST": "2",
        "VDB_NPROBE": "2",
    }
    records = tmp_path / "records.json"
    rows = [
        {"id": f"doc-{index}", "vector": [float(index), float(index % 4), 1.0], "metadata": {"n": index}}
        for index in range(12)
    ]
    records.write_text(json.dumps(rows), encoding="utf-8")
    runner = CliRunner()

    created = runner.invoke(vectordb_cli.app, ["create", "docs", "--dimension", "3", "-D", "site"], env=env)
    assert created.exit_code == 0, created.output
    inserted = runner.invoke(vectordb_cli.app, ["insert", "docs", "--file", str(records), "-D", "site"], env=env)
    assert inserted.exit_code == 0, inserted.output

    header = persistence.read_header(index_path / "site_docs.fvdb")
    assert header["kind"] == "ivf_flat"
    assert header["state"] == "clean"
    assert header["count"] == 12

    result = runner.invoke(
        vectordb_cli.app,
        ["search", "docs", "--vector", "[5, 1, 1]", "--limit", "3", "--filter", "n != 5", "-D", "site"],
        env=env,
    )
    assert result.exit_code == 0, result.output

    hits = json.loads(result.stdout)
    assert len(hits) == 3
    assert "doc-5" not in {hit["id"] for hit in hits}
    assert [hit["distance"] for hit in hits] == sorted(hit["distance"] for hit in hits)

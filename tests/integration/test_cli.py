"""
Integration tests for the policyunion CLI.

Tests cover:
- merge (chain, siblings, overrides, --out)
- validate with and without a schema
- batch, diff and explain
- Exit codes and JSON output
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from policyunion import __version__
from policyunion.cli import app


runner = CliRunner()


@pytest.fixture
def documents_file(temp_dir: Path, documents_yaml: str) -> Path:
    """Write the three-level document set to disk."""
    path = temp_dir / "policies.yaml"
    path.write_text(documents_yaml)
    return path


@pytest.fixture
def cyclic_file(temp_dir: Path) -> Path:
    """Write a cyclic document set to disk."""
    path = temp_dir / "cyclic.yaml"
    path.write_text(
        "- source_id: A\n  parent: B\n  tree: {x: 1}\n"
        "- source_id: B\n  parent: A\n  tree: {x: 2}\n"
    )
    return path


class TestVersion:
    """Tests for --version."""

    def test_version(self) -> None:
        """--version prints the package version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


# =============================================================================
# merge
# =============================================================================


class TestMergeCommand:
    """Tests for `policyunion merge`."""

    def test_merge_json(self, documents_file: Path) -> None:
        """merge --json prints the full report."""
        result = runner.invoke(app, ["merge", str(documents_file), "--target", "service", "--json"])
        assert result.exit_code == 0

        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["chain"] == ["org", "team", "service"]
        assert data["effective"]["repo"]["permissions"] == {"value": "write", "contributingSourceId": "team"}
        assert data["effective"]["branches"]["main"]["checks"]["value"] == ["lint", "test", "security"]

    def test_merge_console(self, documents_file: Path) -> None:
        """merge without --json renders a table."""
        result = runner.invoke(app, ["merge", str(documents_file), "-t", "team"])
        assert result.exit_code == 0
        assert "Effective Policy" in result.stdout
        assert "repo.permissions" in result.stdout

    def test_merge_requires_target(self, documents_file: Path) -> None:
        """A chain merge needs --target."""
        result = runner.invoke(app, ["merge", str(documents_file), "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "usage_error"

    def test_merge_strategy_override(self, documents_file: Path) -> None:
        """--strategy PATH=STRATEGY changes the field's strategy."""
        result = runner.invoke(app, [
            "merge", str(documents_file),
            "--target", "service",
            "--strategy", "branches.main.checks=override",
            "--json",
        ])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["effective"]["branches"]["main"]["checks"]["value"] == ["security"]

    def test_merge_bad_strategy_flag(self, documents_file: Path) -> None:
        """A malformed --strategy is a load error."""
        result = runner.invoke(app, [
            "merge", str(documents_file), "--target", "service", "--strategy", "nonsense", "--json",
        ])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "load_error"

    def test_merge_siblings(self, temp_dir: Path) -> None:
        """--siblings merges in declaration order."""
        path = temp_dir / "siblings.yaml"
        path.write_text(
            "- source_id: a\n  default_strategy: union\n  tree: {perms: [read]}\n"
            "- source_id: b\n  default_strategy: union\n  tree: {perms: [write]}\n"
        )
        result = runner.invoke(app, ["merge", str(path), "--siblings", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["target"] is None
        assert data["effective"]["perms"]["value"] == ["read", "write"]

    def test_merge_cycle_exits_one(self, cyclic_file: Path) -> None:
        """A failed request exits 1 and reports the error."""
        result = runner.invoke(app, ["merge", str(cyclic_file), "--target", "A", "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["success"] is False
        assert data["error"]["context"]["cycle"] == ["A", "B", "A"]

    def test_merge_writes_out_file(self, documents_file: Path, temp_dir: Path) -> None:
        """--out writes the JSON report next to the console output."""
        out = temp_dir / "effective.json"
        result = runner.invoke(app, ["merge", str(documents_file), "--target", "team", "--out", str(out)])
        assert result.exit_code == 0
        assert json.loads(out.read_text())["target"] == "team"

    def test_merge_directory(self, temp_dir: Path) -> None:
        """A directory of one-document files is accepted."""
        docs = temp_dir / "docs"
        docs.mkdir()
        (docs / "a-org.yaml").write_text("tree:\n  repo: {permissions: read}\n")
        (docs / "b-team.yaml").write_text("parent: a-org\ntree:\n  repo: {permissions: write}\n")
        result = runner.invoke(app, ["merge", str(docs), "--target", "b-team", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["chain"] == ["a-org", "b-team"]

    def test_merge_schema_errors_exit_one(self, documents_file: Path, temp_dir: Path) -> None:
        """Error diagnostics fail the command even when merging succeeded."""
        schema = temp_dir / "schema.yaml"
        schema.write_text("required: [repo.owner]\n")
        result = runner.invoke(app, [
            "merge", str(documents_file), "--target", "team", "--schema", str(schema), "--json",
        ])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["summary"]["errors"] == 1

    def test_missing_file(self, temp_dir: Path) -> None:
        """A missing documents file is a usage error."""
        result = runner.invoke(app, ["merge", str(temp_dir / "nope.yaml"), "--target", "x"])
        assert result.exit_code != 0


# =============================================================================
# validate
# =============================================================================


class TestValidateCommand:
    """Tests for `policyunion validate`."""

    def test_valid(self, documents_file: Path) -> None:
        """A clean set exits 0."""
        result = runner.invoke(app, ["validate", str(documents_file)])
        assert result.exit_code == 0
        assert "3 document(s) valid" in result.stdout

    def test_valid_with_schema(self, documents_file: Path, temp_dir: Path, schema_yaml: str) -> None:
        """A set satisfying its schema exits 0."""
        schema = temp_dir / "schema.yaml"
        schema.write_text(schema_yaml)
        result = runner.invoke(app, ["validate", str(documents_file), "--schema", str(schema), "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["valid"] is True

    def test_invalid(self, cyclic_file: Path) -> None:
        """Problems exit 1 and are all listed."""
        result = runner.invoke(app, ["validate", str(cyclic_file), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["valid"] is False
        assert [d["code"] for d in data["diagnostics"]] == ["cycle-detected", "cycle-detected"]

    def test_strict_mode(self, documents_file: Path, temp_dir: Path) -> None:
        """--mode strict turns undescribed paths into errors."""
        schema = temp_dir / "schema.yaml"
        schema.write_text("types:\n  repo.permissions: string\n")
        result = runner.invoke(app, [
            "validate", str(documents_file), "--schema", str(schema), "--mode", "strict", "--json",
        ])
        assert result.exit_code == 1
        codes = {d["code"] for d in json.loads(result.stdout)["diagnostics"]}
        assert codes == {"unconstrained-path"}

    def test_bad_config(self, documents_file: Path, temp_dir: Path) -> None:
        """An invalid config file is reported as a load error."""
        config = temp_dir / "resolver.yaml"
        config.write_text("max_depth: -1\n")
        result = runner.invoke(app, ["validate", str(documents_file), "--config", str(config), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error_type"] == "load_error"
        assert data["details"]["error_type"] == "ConfigError"


# =============================================================================
# batch, diff, explain
# =============================================================================


class TestBatchCommand:
    """Tests for `policyunion batch`."""

    def test_batch_all(self, documents_file: Path) -> None:
        """Every document is resolved."""
        result = runner.invoke(app, ["batch", str(documents_file), "--workers", "2", "--json"])
        assert result.exit_code == 0
        results = json.loads(result.stdout)["results"]
        assert [r["target"] for r in results] == ["org", "team", "service"]

    def test_batch_selected_targets(self, documents_file: Path) -> None:
        """--target limits the batch."""
        result = runner.invoke(app, ["batch", str(documents_file), "-t", "service", "-t", "org", "--json"])
        assert result.exit_code == 0
        assert [r["target"] for r in json.loads(result.stdout)["results"]] == ["service", "org"]

    def test_batch_failure(self, cyclic_file: Path) -> None:
        """Any failed target exits 1."""
        result = runner.invoke(app, ["batch", str(cyclic_file)])
        assert result.exit_code == 1
        assert "With errors: 2" in result.stdout


class TestDiffCommand:
    """Tests for `policyunion diff`."""

    def _report(self, documents_file: Path, target: str, out: Path) -> Path:
        result = runner.invoke(app, ["merge", str(documents_file), "--target", target, "--out", str(out)])
        assert result.exit_code == 0
        return out

    def test_identical(self, documents_file: Path, temp_dir: Path) -> None:
        """Identical policies exit 0."""
        a = self._report(documents_file, "team", temp_dir / "a.json")
        b = self._report(documents_file, "team", temp_dir / "b.json")
        result = runner.invoke(app, ["diff", str(a), str(b)])
        assert result.exit_code == 0
        assert "No differences" in result.stdout

    def test_different(self, documents_file: Path, temp_dir: Path) -> None:
        """Differences exit 1 and are listed."""
        a = self._report(documents_file, "team", temp_dir / "a.json")
        b = self._report(documents_file, "service", temp_dir / "b.json")
        result = runner.invoke(app, ["diff", str(a), str(b), "--json"])
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["identical"] is False
        assert data["differences"][0]["path"] == "repo.topics"
        assert data["differences"][0]["kind"] == "added"

    def test_bare_tree(self, temp_dir: Path) -> None:
        """A bare effective tree is accepted."""
        a = temp_dir / "a.yaml"
        b = temp_dir / "b.yaml"
        a.write_text("x: {value: 1, contributingSourceId: base}\n")
        b.write_text("x: {value: 1, contributingSourceId: team}\n")
        assert runner.invoke(app, ["diff", str(a), str(b)]).exit_code == 0
        assert runner.invoke(app, ["diff", str(a), str(b), "--sources"]).exit_code == 1

    def test_not_a_policy(self, temp_dir: Path) -> None:
        """Files that are not effective policies are load errors."""
        a = temp_dir / "a.yaml"
        a.write_text("x: 1\n")
        result = runner.invoke(app, ["diff", str(a), str(a), "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "load_error"


class TestExplainCommand:
    """Tests for `policyunion explain`."""

    def test_explain_json(self, documents_file: Path) -> None:
        """explain --json lists every contribution."""
        result = runner.invoke(app, [
            "explain", str(documents_file), "branches.main.checks", "--target", "service", "--json",
        ])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [c["sourceId"] for c in data["contributions"]] == ["org", "team", "service"]
        assert data["contributions"][2]["value"] is None
        assert data["resolved"]["strategy"] == "union"

    def test_explain_console(self, documents_file: Path) -> None:
        """explain renders the resolution."""
        result = runner.invoke(app, ["explain", str(documents_file), "repo.permissions", "-t", "service"])
        assert result.exit_code == 0
        assert "Resolved to write" in result.stdout

    def test_explain_cycle(self, cyclic_file: Path) -> None:
        """A broken chain cannot be explained."""
        result = runner.invoke(app, ["explain", str(cyclic_file), "x", "--target", "A", "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["details"]["error_type"] == "CycleDetectedError"

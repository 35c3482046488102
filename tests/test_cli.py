"""Tests for CLI commands."""

import json
import pytest
from click.testing import CliRunner

from rebaseline.cli import cli


@pytest.fixture(autouse=True)
def no_logging_setup(mocker):
    """Keep CLI runs from reconfiguring global logging."""
    return mocker.patch("rebaseline.cli.setup_logging")


@pytest.fixture
def invoke(temp_dir, request_file):
    """Invoke the CLI against the temp request file with default config."""
    runner = CliRunner()

    def _invoke(*args, input=None):
        return runner.invoke(
            cli,
            ["--config", str(temp_dir / "missing.toml"), *args, "-f", str(request_file)],
            input=input,
        )

    return _invoke


def test_add_and_list(invoke, write_source, request_file):
    """Test recording a request and listing it."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")

    result = invoke("add", f"{path}:1:11", "toBe", "--value", '"one"')
    assert result.exit_code == 0, result.output
    assert "Recorded" in result.output
    [record] = json.loads(request_file.read_text())["requests"]
    assert record["payload"]["value"] == "one"

    result = invoke("list")
    assert result.exit_code == 0
    assert "Pending Rebaselines" in result.output
    assert '"one"' in result.output


def test_add_artifact(invoke, write_source, request_file, temp_dir):
    """Test recording an artifact request."""
    path = write_source("a.spec.js", "expect(page).toMatchSnapshot();\n")
    result = invoke(
        "add", f"{path}:1:14", "toMatchSnapshot",
        "--artifact", str(temp_dir / "out.png"), "--dest", str(temp_dir / "ref.png"),
    )
    assert result.exit_code == 0, result.output
    [record] = json.loads(request_file.read_text())["requests"]
    assert record["payload"]["kind"] == "artifact"


def test_add_requires_payload(invoke, write_source):
    """Test add without a value or artifact is a usage error."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")
    result = invoke("add", f"{path}:1:11", "toBe")
    assert result.exit_code == 2


def test_add_rejects_bad_location(invoke):
    """Test add validates the location format."""
    result = invoke("add", "a.spec.js:one", "toBe", "--value", "1")
    assert result.exit_code == 2


def test_add_unknown_matcher(invoke, write_source):
    """Test add reports unsupported matchers."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")
    result = invoke("add", f"{path}:1:11", "toContain", "--value", "1")
    assert result.exit_code == 1
    assert "Unsupported matcher" in result.output


def test_list_empty(invoke):
    """Test list with nothing pending."""
    result = invoke("list")
    assert result.exit_code == 0
    assert "No pending rebaselines" in result.output


def test_apply_batch(invoke, write_source):
    """Test batch apply rewrites the file."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")

    result = invoke("apply")

    assert result.exit_code == 0, result.output
    assert "Applied 1 rebaseline(s)" in result.output
    assert path.read_text() == "expect(1).toBe(1);\n"


def test_apply_batch_unsatisfied(invoke, write_source):
    """Test batch apply exits non-zero and lists unmatched requests."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\nexpect(1).toBe(foo);\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")
    invoke("add", f"{path}:2:11", "toBe", "--value", "1")

    result = invoke("apply")

    assert result.exit_code == 1
    assert "Failed to perform the following rebaselines:" in result.output
    assert f"{path}:2" in result.output
    assert path.read_text() == "expect(1).toBe(1);\nexpect(1).toBe(foo);\n"


def test_apply_dry_run(invoke, write_source, request_file):
    """Test dry run prints a diff and writes nothing."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")
    before = request_file.read_text()

    result = invoke("apply", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "toBe(1)" in result.output
    assert "Would apply 1" in result.output
    assert path.read_text() == "expect(1).toBe(2);\n"
    assert request_file.read_text() == before


def test_apply_interactive(invoke, write_source, request_file):
    """Test interactive apply honors each answer and exits zero."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\nexpect(3).toBe(4);\nexpect(5).toBe(x);\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")
    invoke("add", f"{path}:2:11", "toBe", "--value", "3")
    invoke("add", f"{path}:3:11", "toBe", "--value", "5")

    result = invoke("apply", "--interactive", input="y\nn\n")

    assert result.exit_code == 0, result.output
    assert "No matching call" in result.output
    assert path.read_text() == "expect(1).toBe(1);\nexpect(3).toBe(4);\nexpect(5).toBe(x);\n"
    assert len(json.loads(request_file.read_text())["requests"]) == 2


def test_apply_stale_request(invoke, write_source):
    """Test stale requests are reported and skipped."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")
    path.write_text("expect(1).toBe(3);\n")

    result = invoke("apply")

    assert result.exit_code == 0, result.output
    assert "Skipped (file changed)" in result.output
    assert path.read_text() == "expect(1).toBe(3);\n"


def test_apply_parse_error(invoke, write_source):
    """Test parse errors exit non-zero."""
    path = write_source("a.spec.ts", "expect(1).toBe(2);\n}}\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")

    result = invoke("apply")

    assert result.exit_code == 1
    assert "syntax error" in result.output


def test_apply_interactive_parse_error(invoke, write_source):
    """Test interactive apply reports a broken file and still exits zero."""
    good = write_source("a.spec.js", "expect(1).toBe(2);\n")
    bad = write_source("b.spec.ts", "expect(1).toBe(2);\n}}\n")
    invoke("add", f"{good}:1:11", "toBe", "--value", "1")
    invoke("add", f"{bad}:1:11", "toBe", "--value", "1")

    result = invoke("apply", "--interactive", input="y\n")

    assert result.exit_code == 0, result.output
    assert "syntax error" in result.output
    assert good.read_text() == "expect(1).toBe(1);\n"


def test_list_reports_unreadable(invoke, write_source):
    """Test list shows requests whose file is gone."""
    path = write_source("a.spec.js", "expect(1).toBe(2);\n")
    invoke("add", f"{path}:1:11", "toBe", "--value", "1")
    path.unlink()

    result = invoke("list")

    assert result.exit_code == 0
    assert "Unreadable" in result.output
    assert "No pending rebaselines" not in result.output

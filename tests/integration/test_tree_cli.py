"""
Integration tests for the tree administration CLI.

Tests cover:
- Command dispatch through main()
- Output of ls, path and tree
- Error reporting and exit codes
"""

import json
import tempfile

import pytest

from services.saverestore_server.tools.tree_cli import main


class TestTreeCLI:
    """Tests for saverestore-admin commands."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def run(self, data_dir, capsys):
        """Run the CLI and return its stdout."""

        def _run(*args):
            main(["--data-dir", data_dir, "--user", "admin", *args])
            return capsys.readouterr().out.strip()

        _run("init")
        return _run

    def test_init_and_stats(self, run):
        output = run("stats")

        assert "folder: 1" in output
        assert "configuration: 0" in output

    def test_mkdir_and_ls(self, run):
        folder_id = run("mkdir", "/", "Accelerator")
        run("mkdir", "/Accelerator", "Linac")

        assert folder_id in run("ls", "/")
        listing = run("ls", "/Accelerator")
        assert "[FOLDER] Linac" in listing
        assert run("path", folder_id) == "/Accelerator"

    def test_tree_json(self, run):
        run("mkdir", "/", "Accelerator")

        tree = json.loads(run("tree", "--json"))

        assert tree["name"] == "Save & Restore Root"
        assert [c["name"] for c in tree["children"]] == ["Accelerator"]

    def test_tree_text_indents_children(self, run):
        run("mkdir", "/", "A")
        run("mkdir", "/A", "B")

        lines = run("tree").splitlines()

        assert lines[1].startswith("  [FOLDER] A")
        assert lines[2].startswith("    [FOLDER] B")

    def test_mv_cp_rm(self, run):
        a = run("mkdir", "/", "A")
        b = run("mkdir", "/", "B")

        assert run("mv", "--target", b, a) == "Moved 1 node(s) to /B"
        assert run("path", a) == "/B/A"

        run("cp", "--target", "44bef5de-e8e6-4014-af37-b8f6c8a939a2", a)
        assert "[FOLDER] A" in run("ls", "/")

        assert run("rm", b) == "Deleted 2 node(s)"

    def test_error_exit_code(self, run, capsys):
        with pytest.raises(SystemExit) as exc_info:
            run("path", "missing")

        assert exc_info.value.code == 1
        assert "NOT_FOUND" in capsys.readouterr().err

    def test_cycle_reported(self, run, capsys):
        a = run("mkdir", "/", "A")
        b = run("mkdir", "/A", "B")

        with pytest.raises(SystemExit):
            run("mv", "--target", b, a)

        assert "CYCLE" in capsys.readouterr().err

    def test_ls_missing_path(self, run, capsys):
        with pytest.raises(SystemExit):
            run("ls", "/Nowhere")

        assert "No node at path" in capsys.readouterr().err

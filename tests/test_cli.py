"""Tests for the command-line front-end in local mode."""

import io
import json
import pytest
from pathlib import Path
from unittest.mock import patch

from refman.cli import EXIT_INTERNAL_ERROR, EXIT_OK, EXIT_USER_ERROR, run

from conftest import make_item


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("REFMAN_PORTFILE", str(tmp_path / "run" / "server.port"))
    for key in ["REFMAN_LIBRARY", "REFMAN_SERVER_AUTO_START", "REFMAN_LOG_LEVEL"]:
        monkeypatch.delenv(key, raising=False)


def _run(library_path: Path, *args: str) -> int:
    return run(["--library", str(library_path), "--log-level", "WARNING", *args])


class TestLibraryCommands:
    def test_list_ids(self, library_path: Path, capsys):
        assert _run(library_path, "list", "--ids-only", "--sort", "add", "--order", "asc") == EXIT_OK
        assert capsys.readouterr().out.split() == ["smith-2020", "jones-2018"]

    def test_search_json(self, library_path: Path, capsys):
        assert _run(library_path, "search", "graph", "--json") == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["total"] == 1
        assert data["items"][0]["id"] == "jones-2018"

    def test_cite(self, library_path: Path, capsys):
        assert _run(library_path, "cite", "smith-2020", "--in-text") == EXIT_OK
        assert capsys.readouterr().out.strip() == "(Smith, 2020)"

    def test_cite_missing(self, library_path: Path, capsys):
        assert _run(library_path, "cite", "nobody") == EXIT_USER_ERROR
        assert "not found" in capsys.readouterr().err

    def test_add_from_file(self, library_path: Path, tmp_path: Path, capsys):
        source = tmp_path / "new.json"
        source.write_text(json.dumps(make_item("", "Lee", 2001, "New")))
        assert _run(library_path, "add", str(source)) == EXIT_OK
        assert "lee-2001" in capsys.readouterr().out
        assert "lee-2001" in library_path.read_text()

    def test_add_from_stdin(self, library_path: Path, monkeypatch):
        items = [make_item("a-1", "A", 2001, "a"), make_item("b-1", "B", 2002, "b")]
        monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(items)))
        assert _run(library_path, "add") == EXIT_OK
        ids = [i["id"] for i in json.loads(library_path.read_text())]
        assert ids[-2:] == ["a-1", "b-1"]

    def test_add_invalid_input(self, library_path: Path, monkeypatch, capsys):
        monkeypatch.setattr("sys.stdin", io.StringIO("not json"))
        assert _run(library_path, "add") == EXIT_USER_ERROR

    def test_update(self, library_path: Path, tmp_path: Path):
        updates = tmp_path / "updates.json"
        updates.write_text('{"title": "Renamed"}')
        assert _run(library_path, "update", "smith-2020", str(updates)) == EXIT_OK
        assert json.loads(library_path.read_text())[0]["title"] == "Renamed"

    def test_update_missing(self, library_path: Path, tmp_path: Path):
        updates = tmp_path / "updates.json"
        updates.write_text('{"title": "x"}')
        assert _run(library_path, "update", "nobody", str(updates)) == EXIT_USER_ERROR

    def test_update_collision(self, library_path: Path, tmp_path: Path, capsys):
        updates = tmp_path / "updates.json"
        updates.write_text('{"id": "jones-2018"}')
        assert _run(library_path, "update", "smith-2020", str(updates)) == EXIT_USER_ERROR
        assert _run(library_path, "update", "smith-2020", str(updates), "--on-id-collision", "suffix") == EXIT_OK
        assert "jones-2018a" in capsys.readouterr().out

    def test_remove(self, library_path: Path):
        assert _run(library_path, "remove", "jones-2018") == EXIT_OK
        assert _run(library_path, "remove", "jones-2018") == EXIT_USER_ERROR

    def test_corrupt_library(self, tmp_path: Path):
        bad = tmp_path / "bad.json"
        bad.write_text("{")
        assert _run(bad, "list") == EXIT_USER_ERROR

    def test_unwritable_library(self, library_path: Path, monkeypatch):
        def boom(path, text):
            raise OSError("read-only file system")

        monkeypatch.setattr("refman.core.library.atomic_write_text", boom)
        assert _run(library_path, "remove", "smith-2020") == EXIT_INTERNAL_ERROR

    def test_usage_error(self, library_path: Path):
        with pytest.raises(SystemExit) as exc:
            _run(library_path, "list", "--sort", "relevance")
        assert exc.value.code == 2


class TestServerCommands:
    def test_status_not_running(self, library_path: Path, capsys):
        assert _run(library_path, "server", "status") == EXIT_OK
        assert "not running" in capsys.readouterr().out

    def test_status_json(self, library_path: Path, capsys):
        assert _run(library_path, "server", "status", "--json") == EXIT_OK
        assert json.loads(capsys.readouterr().out) == {"running": False}

    def test_stop_not_running(self, library_path: Path, capsys):
        assert _run(library_path, "server", "stop") == EXIT_USER_ERROR
        assert "not running" in capsys.readouterr().err

    def test_auto_start_uses_config_file(self, library_path: Path, tmp_path: Path, capsys):
        config_path = tmp_path / "custom.toml"
        config_path.write_text("[server]\nauto_start = true\n")
        with patch("refman.context.spawn_detached", side_effect=OSError("no exec")) as spawn:
            code = run(
                ["--config", str(config_path), "--library", str(library_path), "--log-level", "WARNING", "list", "--ids-only"]
            )
        assert code == EXIT_OK
        assert spawn.call_args.kwargs["config_path"] == config_path
        assert "smith-2020" in capsys.readouterr().out

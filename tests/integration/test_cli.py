"""Tests for the note-importer command line."""

import json

import pytest

from note_importer.cli import create_parser, load_collaborators, main
from note_importer.core.exceptions import ConfigurationException
from note_importer.models.queue_item import FileStatus
from tests.conftest import make_ready


@pytest.fixture(autouse=True)
def keep_test_logging(monkeypatch):
    """Leave pytest's log capture in place instead of reconfiguring handlers"""
    monkeypatch.setattr("note_importer.cli.setup_logging", lambda **kwargs: None)


@pytest.fixture
def populated(store):
    make_ready(store, "/x/ready.pdf")
    store.add_item("/x/broken.pdf")
    store.update_status("/x/broken.pdf", FileStatus.ERROR, 0, "bad pdf")
    return store


def test_list_json(database_url, populated, capsys):
    assert main(["--database-url", database_url, "list", "--json"]) == 0

    output = json.loads(capsys.readouterr().out)
    assert [i["file_path"] for i in output["items"]] == ["/x/ready.pdf", "/x/broken.pdf"]
    assert output["stats"]["error"] == 1


def test_list_table_by_status(database_url, populated, capsys):
    assert main(["--database-url", database_url, "list", "--status", "error"]) == 0

    out = capsys.readouterr().out
    assert "/x/broken.pdf" in out
    assert "(bad pdf)" in out
    assert "/x/ready.pdf" not in out


def test_requeue(database_url, populated, capsys):
    assert main(["--database-url", database_url, "requeue", "/x/broken.pdf"]) == 0
    assert "Re-queued: /x/broken.pdf" in capsys.readouterr().out
    assert populated.get("/x/broken.pdf").status == FileStatus.PENDING


def test_requeue_unknown_key_fails(database_url, populated, capsys):
    assert main(["--database-url", database_url, "requeue", "/nope"]) == 2
    assert "not found" in capsys.readouterr().err


def test_purge_all_with_confirmation_flag(database_url, populated, capsys):
    assert main(["--database-url", database_url, "purge-all", "--yes"]) == 0
    assert "Deleted 2 item(s)" in capsys.readouterr().out
    assert populated.stats().total == 0


def test_purge_all_aborts_without_confirmation(database_url, populated, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda prompt: "n")
    assert main(["--database-url", database_url, "purge-all"]) == 1
    assert populated.stats().total == 2


def test_cleanup_requires_verifier(database_url, populated, capsys):
    assert main(["--database-url", database_url, "cleanup"]) == 2


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        create_parser().parse_args([])


def test_load_collaborators_validates_target():
    with pytest.raises(ConfigurationException):
        load_collaborators("no_colon_here")
    with pytest.raises(ConfigurationException):
        load_collaborators("note_importer.does_not_exist:factory")
    assert not hasattr(load_collaborators(None), "uploader")

"""Tests for the command-line front end."""

import json
from unittest.mock import patch

import pytest
import requests

from offline_memory.cli import EXIT_INPUT_ERROR, EXIT_OK, main


@pytest.fixture
def run(tmp_path, capsys):
    db = str(tmp_path / "cli.sqlite")

    def _run(*argv):
        code = main(["--db", db, *argv])
        out = capsys.readouterr().out
        return code, json.loads(out)

    return _run


class TestItems:
    def test_init(self, run, tmp_path):
        code, data = run("init")
        assert code == EXIT_OK
        assert data["ok"] is True
        assert (tmp_path / "cli.sqlite").exists()

    def test_add_then_search(self, run):
        code, data = run("add", "espresso", "at", "the", "cafe", "--entity-id", "loic")
        assert code == EXIT_OK
        item_id = data["id"]

        code, data = run("search", "espresso")
        assert code == EXIT_OK
        assert data["mode"] == "lexical"
        assert [r["item"]["id"] for r in data["results"]] == [item_id]

        _, data = run("search", "espresso", "--entity-id", "marie")
        assert data["results"] == []

    def test_remember_alias(self, run):
        code, data = run("remember", "tea", "--id", "t1")
        assert code == EXIT_OK
        assert data["id"] == "t1"

    def test_bad_meta_exits_2(self, run):
        code, data = run("add", "x", "--meta", "{broken")
        assert code == EXIT_INPUT_ERROR
        assert data["ok"] is False

    def test_duplicate_id_exits_2(self, run):
        run("add", "one", "--id", "dup")
        code, data = run("add", "two", "--id", "dup")
        assert code == EXIT_INPUT_ERROR
        assert "already exists" in data["error"]

    def test_entities_and_sessions(self, run):
        run("add", "a", "--entity-id", "loic", "--session-id", "s1")
        run("add", "b", "--entity-id", "marie")
        assert run("entities")[1]["entities"] == ["loic", "marie"]
        assert run("sessions")[1]["sessions"] == ["s1"]

    def test_hybrid_search_degrades_when_gateway_is_down(self, run):
        run("add", "espresso", "at", "the", "cafe")
        with patch("offline_memory.embeddings.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            code, data = run("search", "espresso", "--hybrid")
        assert code == EXIT_OK
        assert data["mode"] == "lexical_only"
        assert len(data["results"]) == 1
        assert data["results"][0]["semantic_score"] is None

    @pytest.mark.parametrize("value", ["0", "-1"])
    def test_candidates_below_one_exit_2(self, run, value):
        run("add", "espresso")
        with patch("offline_memory.embeddings.requests.post") as post:
            code, data = run("search", "espresso", "--hybrid", "--candidates", value)
        assert code == EXIT_INPUT_ERROR
        assert "--candidates" in data["error"]
        post.assert_not_called()

    def test_hybrid_with_hosted_provider_and_no_key_exits_2(self, run, monkeypatch):
        monkeypatch.setenv("OFFLINE_MEMORY_PROVIDER", "hosted")
        run("add", "espresso")
        code, data = run("search", "espresso", "--hybrid")
        assert code == EXIT_INPUT_ERROR
        assert "missing API key" in data["error"]

    def test_lexical_search_ignores_provider_config(self, run, monkeypatch):
        monkeypatch.setenv("OFFLINE_MEMORY_PROVIDER", "hosted")
        run("add", "espresso")
        code, data = run("search", "espresso")
        assert code == EXIT_OK
        assert len(data["results"]) == 1

    def test_bad_semantic_weight(self, run):
        code, _ = run("search", "x", "--hybrid", "--semantic-weight", "2")
        assert code == EXIT_INPUT_ERROR


class TestFactsAndGraph:
    def test_fact_add_clamps(self, run):
        code, data = run("fact-add", "Loic", "works_at", "Fasst", "--confidence", "5")
        assert code == EXIT_OK
        assert data["confidence"] == 1.0

    def test_blank_subject_exits_2(self, run):
        code, _ = run("fact-add", " ", "works_at", "Fasst")
        assert code == EXIT_INPUT_ERROR

    def test_facts_listing(self, run):
        run("fact-add", "Loic", "works_at", "Fasst")
        run("fact-add", "Marie", "likes", "tea")
        assert len(run("facts")[1]["facts"]) == 2
        assert [f["object"] for f in run("facts", "--subject", "Marie")[1]["facts"]] == ["tea"]
        assert [f["subject"] for f in run("facts", "--query", "fasst")[1]["facts"]] == ["Loic"]

    def test_graph_commands(self, run):
        run("fact-add", "A", "knows", "B")
        run("fact-add", "B", "knows", "C")
        _, data = run("graph-stats")
        assert data["stats"]["total_entities"] == 3
        _, data = run("graph-path", "A", "C")
        assert data["paths"][0]["nodes"] == ["A", "B", "C"]

import pytest

from starindex import cli
from starindex.config import load_settings
from starindex.errors import ProviderAuthError
from starindex.models import EmbeddedItem

from .conftest import make_item


@pytest.fixture
def use_services(services, monkeypatch):
    calls = {}

    def fake_build_services(settings, listener=None, validate=False):
        calls["validate"] = validate
        services.orchestrator.listener = listener
        return services

    monkeypatch.setattr(cli, "build_services", fake_build_services)
    return calls


def test_index_prints_progress_and_continuation(use_services, services, capsys):
    services.config_manager.update(page_size=2)

    assert cli.main(["index"]) == 0

    out = capsys.readouterr().out
    assert "[1/2] Downloading READMEs: owner/repo-001" in out
    assert "2 of 5 repositories indexed" in out
    assert "starindex index --page 2" in out
    assert use_services["validate"] is True


def test_query_prints_results(use_services, services, capsys):
    services.store.upsert([EmbeddedItem(make_item(1, name="acme/one"), [1.0, 0.0, 0.0, 0.0])])

    assert cli.main(["query", "vector", "search"]) == 0

    out = capsys.readouterr().out
    assert "Searching for: 'vector search'" in out
    assert "1. acme/one" in out
    assert "Similarity: 100.0%" in out


def test_config_updates_are_clamped(use_services, capsys):
    assert cli.main(["config", "--batch-size", "80", "--page-size", "abc"]) == 0
    assert "batch_size=50 max_retries=5 page_size=30" in capsys.readouterr().out


def test_view_unknown_repository(use_services, capsys):
    assert cli.main(["view", "acme/none"]) == 0
    assert "Repository 'acme/none' not found." in capsys.readouterr().out


def test_run_errors_exit_non_zero(use_services, services, capsys):
    services.source.list_error = ProviderAuthError("bad token")

    assert cli.main(["index", "--page", "3"]) == 1
    assert "Error (page 3, paging): bad token" in capsys.readouterr().err


def test_query_requires_text(use_services):
    with pytest.raises(SystemExit):
        cli.main(["query"])


@pytest.fixture
def no_credentials(tmp_path, monkeypatch):
    settings = load_settings(tmp_path / "missing.yaml", environ={"STARINDEX_DB_PATH": str(tmp_path / "db")})
    monkeypatch.setattr(cli, "settings", settings)
    return settings


def test_local_commands_run_without_credentials(no_credentials, capsys):
    assert cli.main(["config", "--batch-size", "7"]) == 0
    assert "batch_size=7" in capsys.readouterr().out
    assert (no_credentials.db_path / "indexing.yaml").exists()

    assert cli.main(["view"]) == 0
    assert "No repositories stored yet" in capsys.readouterr().out

    assert cli.main(["clear"]) == 0
    assert "Cleared all stored repositories." in capsys.readouterr().out


def test_index_without_token_names_the_missing_setting(no_credentials, capsys):
    assert cli.main(["index"]) == 1
    assert "STARINDEX_GITHUB_TOKEN" in capsys.readouterr().err


def test_result_count_may_follow_the_query(use_services, services, capsys):
    services.store.upsert(
        [
            EmbeddedItem(make_item(1, name="acme/one"), [1.0, 0.0, 0.0, 0.0]),
            EmbeddedItem(make_item(2, name="acme/two"), [1.0, 0.0, 0.0, 0.0]),
        ]
    )

    assert cli.main(["query", "vector", "search", "-k", "1"]) == 0

    out = capsys.readouterr().out
    assert "Searching for: 'vector search'" in out
    assert "Found 1 matching repositories" in out

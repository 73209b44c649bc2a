"""
Tests for the pm command line.
"""

import json
from pathlib import Path

import pytest

from pm import cli
from pm.commands.install import parse_target, resolve_template


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    """Config whose roots all live under tmp_path."""
    monkeypatch.setattr("pm.commands.configure_logging", lambda level=None: None)
    roots = {
        key: str(tmp_path / key)
        for key in ("config_root", "web_root", "cache_root", "drivers_root", "hub_root", "temp_root")
    }
    roots["notify_socket"] = str(tmp_path / "notify.sock")
    roots["token_file"] = str(tmp_path / "tokens.json")
    lines = ["[debplug]"] + [f'{key} = "{value}"' for key, value in roots.items()]
    path = tmp_path / "debplug.toml"
    path.write_text("\n".join(lines) + "\n")
    return path


class TestTargets:
    """Test install target parsing."""

    def test_parse_target(self):
        """Should split on the last @."""
        assert parse_target("acme/demo.json@v1.0.0") == ("acme/demo.json", "v1.0.0")
        assert parse_target("a@b/demo.json@v1") == ("a@b/demo.json", "v1")
        assert parse_target("acme/demo.json") == ("acme/demo.json", None)

    def test_resolve_template(self):
        """Should anchor relative paths at the hub root."""
        hub = Path("/hub")
        assert resolve_template("acme/demo.json", hub) == Path("/hub/acme/demo.json")
        assert resolve_template("/elsewhere/demo.json", hub) == Path("/elsewhere/demo.json")


class TestMain:
    """Test command routing."""

    def test_help(self, capsys):
        """Should print help without an operation."""
        assert cli.main([]) == 0
        assert "pm -S <template>@<tag>" in capsys.readouterr().out

    def test_init_config(self, tmp_path, capsys):
        """Should write a default config file."""
        path = tmp_path / "etc" / "debplug.toml"

        assert cli.main(["--init-config", "--config", str(path)]) == 0

        assert "[debplug]" in path.read_text()
        assert str(path) in capsys.readouterr().out

    @pytest.mark.parametrize("argv", [["-S"], ["-R"], ["-Si"], ["-U", "a", "b"]])
    def test_usage_errors(self, argv, capsys):
        """Should reject missing or extra targets."""
        assert cli.main(argv) == 1
        assert "Usage: pm" in capsys.readouterr().err

    def test_query_lists_plugins(self, config_file, tmp_path, capsys):
        """Should print installed plugins from their manifests."""
        web = tmp_path / "web_root" / "demo"
        web.mkdir(parents=True)
        (web / "manifest.json").write_text(json.dumps({"name": "demo", "version": "1.0.0"}))

        assert cli.main(["-Q", "--config", str(config_file)]) == 0

        assert capsys.readouterr().out.strip() == "demo 1.0.0"

    def test_upgrade_without_check(self, config_file, capsys):
        """Should report that no update check has been run."""
        assert cli.main(["-U", "--config", str(config_file)]) == 1
        assert "Run check_updates first" in capsys.readouterr().err

    def test_remove_unknown(self, config_file, capsys):
        """Should fail for a plugin that is not installed."""
        assert cli.main(["-R", "ghost", "--config", str(config_file)]) == 1
        assert "Failed to remove ghost" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path, capsys):
        """Should report config errors."""
        path = tmp_path / "bad.toml"
        path.write_text("[debplug]\nmax_workers = 0\n")

        assert cli.main(["-Q", "--config", str(path)]) == 1
        assert "Error:" in capsys.readouterr().err

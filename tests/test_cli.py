"""Tests for the proofcast CLI."""

import json

from click.testing import CliRunner


def _metadata(tmp_path, steps, actors=None):
    data = {"name": "collab", "steps": steps}
    if actors:
        data["actors"] = actors
    path = tmp_path / "run.json"
    path.write_text(json.dumps(data))
    return path


class TestAuditCommand:
    """Tests for `proofcast audit`."""

    def test_ok_run_exits_zero(self, tmp_path):
        """Test a healthy collaboration run."""
        from main import cli

        path = _metadata(tmp_path, [
            {"index": 1, "caption": 'alice adds task: "Milk"', "startMs": 0, "endMs": 1000, "role": "alice"},
            {"index": 2, "caption": 'bob sees "Milk"', "startMs": 1000, "endMs": 1500, "role": "bob"},
        ], actors=[{"id": "alice"}, {"id": "bob"}])

        result = CliRunner().invoke(cli, ["audit", str(path)])

        assert result.exit_code == 0, result.output
        assert "Milk" in result.output
        assert "Sync summary: n=1" in result.output

    def test_negative_delta_exits_two(self, tmp_path):
        """Test that broken causality fails the command."""
        from main import cli

        path = _metadata(tmp_path, [
            {"index": 1, "caption": 'bob sees "Eggs"', "startMs": 0, "endMs": 900, "role": "bob"},
            {"index": 2, "caption": 'alice adds task: "Eggs"', "startMs": 0, "endMs": 1000, "role": "alice"},
        ])

        result = CliRunner().invoke(cli, ["audit", str(path)])

        assert result.exit_code == 2
        assert "FAIL" in result.output

    def test_single_role_is_rejected(self, tmp_path):
        """Test that an audit needs two roles."""
        from main import cli

        path = _metadata(tmp_path, [
            {"index": 1, "caption": "solo", "startMs": 0, "endMs": 10, "role": "alice"},
        ])

        result = CliRunner().invoke(cli, ["audit", str(path)])

        assert result.exit_code == 1
        assert "two roles" in result.output


class TestConfig:
    """Tests for session option loading."""

    def test_yaml_config_and_flags_merge(self, tmp_path):
        """Test that flags override config values."""
        from main import build_session_options, load_config
        from proofcast.compositor import GridLayout

        config_path = tmp_path / "session.yaml"
        config_path.write_text(
            "mode: human\n"
            "layout:\n  cols: 2\n"
            "delays:\n  key_delay_ms: [10, 20]\n"
            "narration:\n  voice: alloy\n"
        )

        options = build_session_options(load_config(str(config_path)), mode="fast", record=None)

        assert options["mode"] == "fast"
        assert "record" not in options
        assert options["layout"] == GridLayout(2)
        assert options["delays"] == {"key_delay_ms": [10, 20]}
        assert options["narration"].enabled
        assert options["narration"].voice == "alloy"

    def test_missing_config_is_empty(self):
        """Test that no --config means no options."""
        from main import load_config

        assert load_config(None) == {}


class TestRunCommand:
    """Tests for `proofcast run` argument handling."""

    def test_scenario_without_entry_point_is_rejected(self, tmp_path):
        """Test that a scenario file must define scenario()."""
        from main import cli

        path = tmp_path / "empty_scenario.py"
        path.write_text("VALUE = 1\n")

        result = CliRunner().invoke(cli, ["run", str(path)])

        assert result.exit_code != 0
        assert "scenario" in result.output

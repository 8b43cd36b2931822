"""Tests for the command-line interface."""

import json

from click.testing import CliRunner
from interval_coach.cli import cli


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def work(moving_time=250, speed=4.0, hr=160):
    return {
        "type": "WORK",
        "distance": speed * moving_time,
        "moving_time": moving_time,
        "average_speed": speed,
        "average_heartrate": hr,
        "average_cadence": 180,
    }


class TestCli:
    """Test CLI commands with JSON input files."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runner = CliRunner()

    def test_evaluate_json(self, tmp_path):
        path = write_json(tmp_path / "intervals.json", {"icu_intervals": [work() for _ in range(5)]})
        result = self.runner.invoke(cli, ["evaluate", path, "--intent", "vo2", "--target-km", "5", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["overall"] == 100
        assert data["rep_count"] == 5

    def test_evaluate_table(self, tmp_path):
        path = write_json(tmp_path / "intervals.json", [work() for _ in range(3)])
        result = self.runner.invoke(cli, ["evaluate", path])

        assert result.exit_code == 0
        assert "Overall" in result.output

    def test_hrr60_json(self, tmp_path):
        time = list(range(240))
        speed = [5.0] * 120 + [2.5] * 120
        hr = [150 + i * 0.25 for i in range(120)] + [180 - i * 0.3 for i in range(120)]
        path = write_json(tmp_path / "streams.json", {"time": time, "heartrate": hr, "velocity_smooth": speed})
        result = self.runner.invoke(cli, ["hrr60", path, "--type", "vo2", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["HRR60_count"] == 1

    def test_learn_json(self, tmp_path):
        events = [
            {"day": "2026-10-10", "strategyArm": "FREQ_UP", "outcomeClass": "GOOD", "contextKey": "LEGACY"}
            for _ in range(4)
        ]
        path = write_json(tmp_path / "events.json", {"events": events})
        result = self.runner.invoke(cli, ["learn", path, "--context-key", "LEGACY", "--as-of", "2026-10-17", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["recommendation"]["strategy_arm"] == "FREQ_UP"
        assert "Confidence" in data["narrative"]

    def test_learn_without_context_uses_all_events(self, tmp_path):
        events = [
            {"day": "2026-10-10", "strategyArm": "HOLD_ABSORB", "outcomeClass": "GOOD", "contextKey": "LEGACY"},
            {"day": "2026-10-12", "strategyArm": "FREQ_UP", "outcomeClass": "BAD",
             "contextKey": "RFgap=T|stress=HIGH|hrv=LOW|drift=BAD|sleep=LOW|mono=HIGH"},
        ]
        path = write_json(tmp_path / "events.json", events)
        result = self.runner.invoke(cli, ["learn", path, "--as-of", "2026-10-17", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["context_key"] == "ALL"
        assert data["recommendation"]["global_fallback"] is False
        assert data["sample_count"] == 2
        assert "based on global data" not in data["narrative"]

    def test_learn_table(self, tmp_path):
        path = write_json(tmp_path / "events.json", [])
        result = self.runner.invoke(cli, ["learn", path, "--as-of", "2026-10-17"])

        assert result.exit_code == 0
        assert "Learning" in result.output

    def test_weekly_key_json(self, tmp_path):
        path = write_json(tmp_path / "context.json", {
            "distance": "10k",
            "keySpacing": {"ok": False, "nextAllowedIso": "2026-02-12"},
        })
        result = self.runner.invoke(cli, ["weekly-key", path, "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["key_type"] is None
        assert data["key_label"].startswith("no key")

    def test_weekly_plan_json(self, tmp_path):
        path = write_json(tmp_path / "context.json", {
            "distance": "10k", "phase": "BUILD", "dayIso": "2026-03-10", "runfloorGap": True,
        })
        result = self.runner.invoke(cli, ["weekly-plan", path, "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["runfloor_blocked"] is True
        assert not any(w["is_key"] for w in data["selected"])

    def test_weekly_plan_table(self, tmp_path):
        path = write_json(tmp_path / "context.json", {"distance": "5k", "phase": "BUILD", "dayIso": "2026-03-10"})
        result = self.runner.invoke(cli, ["weekly-plan", path])

        assert result.exit_code == 0
        assert "Weekly Plan" in result.output

    def test_missing_file_is_reported(self, tmp_path):
        result = self.runner.invoke(cli, ["weekly-plan", str(tmp_path / "missing.json")])

        assert result.exit_code != 0
        assert "Cannot read" in result.output

    def test_invalid_json_is_reported(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        result = self.runner.invoke(cli, ["weekly-key", str(path)])

        assert result.exit_code != 0

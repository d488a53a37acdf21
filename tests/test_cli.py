"""Tests for cli.py — argument parsing and the offline subcommands."""
from __future__ import annotations

import json
import textwrap

import pytest

from fakes import FakeAdapter, make_orchestrator
from headshot_orchestrator import cli


class TestParser:

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    def test_generate_requires_account_key_and_prompt(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["generate", "--account", "a"])

    def test_defaults(self):
        args = cli.build_parser().parse_args(["estimate"])
        assert args.func is cli.cmd_estimate
        assert args.count == 1
        assert args.model_class == "balanced"
        assert args.resolution == "1024x1024"
        assert args.config is None


# ── estimate ─────────────────────────────────────────────────────────────────

class TestEstimate:

    def test_lists_every_provider(self, capsys):
        cli.main(["estimate", "--count", "2"])
        out = capsys.readouterr().out
        for provider in ("fal", "leonardo", "replicate"):
            assert provider in out
        assert "0.05" in out

    def test_portrait_skips_square_only_provider(self, capsys):
        cli.main(["estimate", "--resolution", "896x1152"])
        out = capsys.readouterr().out
        assert "leonardo" in out
        assert "replicate" not in out

    def test_unservable_request_exits_1(self, capsys):
        with pytest.raises(SystemExit) as exc:
            cli.main(["estimate", "--resolution", "640x480"])
        assert exc.value.code == 1
        assert "No provider" in capsys.readouterr().out

    def test_config_file(self, tmp_path, capsys):
        path = tmp_path / "headshots.yaml"
        path.write_text(textwrap.dedent("""
            providers:
              - id: solo
                kind: fal
                models: {balanced: flux-dev}
                pricing:
                  flux-dev:
                    1024x1024: 0.01
        """))
        cli.main(["--config", str(path), "estimate", "--count", "3"])
        out = capsys.readouterr().out
        assert "solo" in out
        assert "fal " not in out
        assert "0.03" in out


# ── ledger / generate ────────────────────────────────────────────────────────

class TestLedgerAndGenerate:

    def test_empty_ledger(self, tmp_path, capsys):
        cli.main(["ledger", "--db", str(tmp_path / "l.db")])
        assert "No settlements recorded." in capsys.readouterr().out

    def test_generate_writes_ledger(self, tmp_path, capsys, monkeypatch):
        def _from_config(cls, config, **kwargs):
            return make_orchestrator(FakeAdapter("fal"), **kwargs)

        monkeypatch.setattr(cli.Orchestrator, "from_config", classmethod(_from_config))
        db = str(tmp_path / "l.db")
        cli.main(["generate", "--account", "acct_1", "--key", "k1",
                  "--prompt", "studio headshot", "--count", "2", "--ledger", db])
        out = capsys.readouterr().out
        result = json.loads(out[out.index("{"):])
        assert result["outcome"] == "succeeded"
        assert len(result["assets"]) == 2

        cli.main(["ledger", "--db", db, "--account", "acct_1"])
        out = capsys.readouterr().out
        assert result["job_id"] in out
        assert "1 job(s), total $0.04" in out

        cli.main(["ledger", "--db", db, "--job", result["job_id"]])
        assert "fal" in capsys.readouterr().out

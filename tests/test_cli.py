"""Tests for dumpvault CLI (dumpvault.py)."""

from __future__ import annotations

import argparse
import threading
from unittest.mock import MagicMock, patch

import pytest
import yaml

import config
from capacity import AdmissionResult, InsufficientSpaceError, SizeEstimate
from catalog import load_records, save_records
from collector import DatabaseMetadata
from dumpvault import cmd_backup, cmd_cleanup, cmd_estimate, cmd_scan, cmd_summary, main
from engines import QueryError
from summary import RunSummary, save_summary


def _write_config(tmp_path, cfg=None):
    """Write a minimal valid config and return the path."""
    if cfg is None:
        cfg = {
            "datasources": {
                "ds1": {
                    "engine": "mysql",
                    "host": "localhost",
                    "port": 3306,
                    "user": "u",
                    "password": "p",
                }
            },
            "jobs": {
                "job1": {
                    "datasource": "ds1",
                    "output_dir": str(tmp_path / "job1"),
                    "retention": {"keep_last": 3},
                },
                "job2": {
                    "datasource": "ds1",
                    "output_dir": str(tmp_path / "job2"),
                    "compression": "zstd",
                },
            },
        }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(cfg))
    return str(path)


def _summary(status="success"):
    return MagicMock(status=status)


class TestCmdBackup:
    @patch("dumpvault.run_backup")
    def test_single_job(self, mock_run_backup, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_backup.return_value = _summary()

        cmd_backup(argparse.Namespace(all=False, job="job1", prune=False), raw)

        mock_run_backup.assert_called_once()
        job = mock_run_backup.call_args[0][0]
        assert job.name == "job1"
        assert job.datasource.engine == "mysql"

    @patch("dumpvault.run_backup")
    def test_all_jobs(self, mock_run_backup, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_backup.return_value = _summary()

        cmd_backup(argparse.Namespace(all=True, job=None, prune=False), raw)

        assert mock_run_backup.call_count == 2

    @patch("dumpvault.apply_retention")
    @patch("dumpvault.run_backup")
    def test_backup_with_prune(self, mock_run_backup, mock_apply_retention, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_backup.return_value = _summary()

        cmd_backup(argparse.Namespace(all=False, job="job1", prune=True, dry_run=True), raw)

        mock_apply_retention.assert_called_once()
        args, kwargs = mock_apply_retention.call_args
        assert args[0] == str(tmp_path / "job1")
        assert args[1].keep_last == 3
        assert kwargs["dry_run"] is True

    @patch("dumpvault.apply_retention")
    @patch("dumpvault.run_backup")
    def test_no_prune_after_partial_run(self, mock_run_backup, mock_apply_retention, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_backup.return_value = _summary("partial")

        with pytest.raises(SystemExit) as exc_info:
            cmd_backup(argparse.Namespace(all=False, job="job1", prune=True), raw)

        assert exc_info.value.code == 1
        mock_apply_retention.assert_not_called()

    @patch("dumpvault.run_backup")
    def test_failing_job_does_not_stop_others(self, mock_run_backup, tmp_path):
        """One job raises, the other still runs, exit code is 1."""
        raw = config.load(_write_config(tmp_path))
        mock_run_backup.side_effect = [RuntimeError("mysql client missing"), _summary()]

        with pytest.raises(SystemExit):
            cmd_backup(argparse.Namespace(all=True, job=None, prune=False), raw)

        assert mock_run_backup.call_count == 2

    @patch("dumpvault.run_backup")
    def test_all_no_jobs_exits(self, mock_run_backup, tmp_path):
        raw = config.load(_write_config(tmp_path, {"datasources": {}, "jobs": {}}))

        with pytest.raises(SystemExit):
            cmd_backup(argparse.Namespace(all=True, job=None, prune=False), raw)

        mock_run_backup.assert_not_called()

    @patch("dumpvault.run_backup")
    def test_cancelled_jobs_skipped(self, mock_run_backup, tmp_path):
        raw = config.load(_write_config(tmp_path))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SystemExit):
            cmd_backup(argparse.Namespace(all=True, job=None, prune=False, cancel=cancel), raw)

        mock_run_backup.assert_not_called()

    @patch("dumpvault.run_backup")
    def test_cancel_event_passed_through(self, mock_run_backup, tmp_path):
        raw = config.load(_write_config(tmp_path))
        mock_run_backup.return_value = _summary()
        cancel = threading.Event()

        cmd_backup(argparse.Namespace(all=False, job="job1", prune=False, cancel=cancel), raw)

        assert mock_run_backup.call_args[1]["cancel"] is cancel


class TestCmdScanEstimate:
    def _engine(self):
        engine = MagicMock()
        engine.list_databases.return_value = ["mysql", "app", "crm"]
        return engine

    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_scan_prints_table(self, mock_create_engine, mock_collect, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        mock_create_engine.return_value = self._engine()
        mock_collect.return_value = {
            "app": DatabaseMetadata(name="app", size_bytes=2048, table_count=12),
            "crm": DatabaseMetadata(name="crm", error="size_bytes: timed out"),
        }

        cmd_scan(argparse.Namespace(job="job1"), raw)

        assert mock_collect.call_args[0][2] == ["app", "crm"]
        out = capsys.readouterr().out
        assert "app" in out
        assert "size_bytes: timed out" in out
        assert "2 database(s)" in out
        assert "1 with errors" in out

    @patch("dumpvault.check_capacity")
    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_estimate_insufficient_exits(self, mock_create_engine, mock_collect, mock_check,
                                         tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        mock_create_engine.return_value = self._engine()
        mock_collect.return_value = {}
        result = AdmissionResult(
            output_dir=str(tmp_path / "job1"),
            estimated_total=1000,
            required_with_margin=1150,
            available_free=100,
            sufficient=False,
            per_database=[SizeEstimate("app", 740, 1000, 1000, 1.0, False, False)],
        )
        mock_check.side_effect = InsufficientSpaceError(result)

        with pytest.raises(SystemExit):
            cmd_estimate(argparse.Namespace(job="job1"), raw)

        out = capsys.readouterr().out
        assert "INSUFFICIENT" in out
        assert "app" in out

    @patch("dumpvault.check_capacity")
    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_estimate_ok(self, mock_create_engine, mock_collect, mock_check, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        mock_create_engine.return_value = self._engine()
        mock_collect.return_value = {}
        mock_check.return_value = AdmissionResult(
            output_dir=str(tmp_path / "job1"), available_free=10, sufficient=True,
        )

        cmd_estimate(argparse.Namespace(job="job1"), raw)

        assert "Verdict:              OK" in capsys.readouterr().out

    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_scan_saves_records_with_query_timeout(self, mock_create_engine, mock_collect, tmp_path):
        raw = config.load(_write_config(tmp_path))
        raw["datasources"]["ds1"]["query_timeout"] = 4
        engine = self._engine()
        mock_create_engine.return_value = engine
        mock_collect.return_value = {
            "app": DatabaseMetadata(name="app", size_bytes=2048),
            "crm": DatabaseMetadata(name="crm", size_bytes=4096),
        }

        cmd_scan(argparse.Namespace(job="job1"), raw)

        assert engine.list_databases.call_args[1]["timeout"] == 4.0
        assert mock_collect.call_args[1]["query_timeout"] == 4.0
        stored = load_records(str(tmp_path / "job1"), "localhost", 3306)
        assert stored["crm"].size_bytes == 4096

    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_rescan_only_failed_records(self, mock_create_engine, mock_collect, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        output_dir = str(tmp_path / "job1")
        save_records({
            "app": DatabaseMetadata(name="app", size_bytes=2048),
            "crm": DatabaseMetadata(name="crm", error="size_bytes: timed out"),
        }, output_dir, "localhost", 3306)
        mock_create_engine.return_value = self._engine()
        mock_collect.return_value = {"crm": DatabaseMetadata(name="crm", size_bytes=512)}

        cmd_scan(argparse.Namespace(job="job1", rescan=True), raw)

        assert mock_collect.call_args[0][2] == ["crm"]
        stored = load_records(output_dir, "localhost", 3306)
        assert stored["crm"].error == ""
        assert stored["app"].size_bytes == 2048
        assert "1 database(s)" in capsys.readouterr().out

    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_rescan_without_failures(self, mock_create_engine, mock_collect, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        mock_create_engine.return_value = self._engine()

        cmd_scan(argparse.Namespace(job="job1", rescan=True), raw)

        mock_collect.assert_not_called()
        assert "No failed scan records" in capsys.readouterr().out

    @patch("dumpvault.check_capacity")
    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_estimate_reuses_clean_records(self, mock_create_engine, mock_collect, mock_check, tmp_path):
        raw = config.load(_write_config(tmp_path))
        save_records({
            "app": DatabaseMetadata(name="app", size_bytes=2048),
            "crm": DatabaseMetadata(name="crm", error="size_bytes: timed out"),
        }, str(tmp_path / "job1"), "localhost", 3306)
        mock_create_engine.return_value = self._engine()
        mock_collect.return_value = {"crm": DatabaseMetadata(name="crm", size_bytes=512)}
        mock_check.return_value = AdmissionResult(
            output_dir=str(tmp_path / "job1"), available_free=10, sufficient=True,
        )

        cmd_estimate(argparse.Namespace(job="job1"), raw)

        assert mock_collect.call_args[0][2] == ["crm"]
        metadata = mock_check.call_args[0][1]
        assert metadata["app"].size_bytes == 2048
        assert metadata["crm"].size_bytes == 512

    @patch("dumpvault.check_capacity")
    @patch("dumpvault.collect_metadata")
    @patch("dumpvault.create_engine")
    def test_estimate_fresh_ignores_records(self, mock_create_engine, mock_collect, mock_check, tmp_path):
        raw = config.load(_write_config(tmp_path))
        save_records({"app": DatabaseMetadata(name="app", size_bytes=2048)},
                     str(tmp_path / "job1"), "localhost", 3306)
        mock_create_engine.return_value = self._engine()
        mock_collect.return_value = {}
        mock_check.return_value = AdmissionResult(
            output_dir=str(tmp_path / "job1"), available_free=10, sufficient=True,
        )

        cmd_estimate(argparse.Namespace(job="job1", fresh=True), raw)

        assert mock_collect.call_args[0][2] == ["app", "crm"]


class TestCmdCleanupSummary:
    @patch("dumpvault.apply_retention")
    def test_cleanup(self, mock_apply_retention, tmp_path):
        raw = config.load(_write_config(tmp_path))

        cmd_cleanup(argparse.Namespace(job="job1", dry_run=True), raw)

        args, kwargs = mock_apply_retention.call_args
        assert args[1].keep_last == 3
        assert kwargs["dry_run"] is True

    def test_summary_lists_runs(self, tmp_path, capsys):
        from datetime import datetime, timezone

        raw = config.load(_write_config(tmp_path))
        s = RunSummary(
            backup_id="backup_20260301_020000", job="job1", mode="separate",
            started_at=datetime(2026, 3, 1, 2, 0, tzinfo=timezone.utc),
            abort_reason="No databases left to back up after filtering",
        )
        s.finalize(datetime(2026, 3, 1, 2, 0, 5, tzinfo=timezone.utc))
        save_summary(s, str(tmp_path / "job1"))

        cmd_summary(argparse.Namespace(job="job1"), raw)

        out = capsys.readouterr().out
        assert "backup_20260301_020000" in out
        assert "aborted" in out
        assert "Total: 1 run(s)" in out

    def test_summary_empty(self, tmp_path, capsys):
        raw = config.load(_write_config(tmp_path))
        cmd_summary(argparse.Namespace(job="job1"), raw)
        assert "No run summaries found" in capsys.readouterr().out


class TestEncryptDecrypt:
    def test_round_trip(self, tmp_path, capsys):
        src = tmp_path / "app.sql"
        src.write_bytes(b"-- MySQL dump\nCREATE TABLE t (id int);\n")

        with patch("sys.argv", ["dumpvault", "encrypt", str(src), "--key", "pw"]):
            main()
        enc = tmp_path / "app.sql.enc"
        assert enc.exists()
        assert enc.read_bytes() != src.read_bytes()

        src.unlink()
        with patch("sys.argv", ["dumpvault", "decrypt", str(enc), "--key", "pw"]):
            main()
        assert src.read_bytes() == b"-- MySQL dump\nCREATE TABLE t (id int);\n"
        assert str(src) in capsys.readouterr().out

    def test_key_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DUMPVAULT_ENCRYPTION_KEY", "env-pw")
        src = tmp_path / "data"
        src.write_bytes(b"rows")
        out = tmp_path / "data.bin"

        with patch("sys.argv", ["dumpvault", "encrypt", str(src), "-o", str(out)]):
            main()
        with patch("sys.argv", ["dumpvault", "decrypt", str(out), "--key", "env-pw"]):
            main()
        assert (tmp_path / "data.bin.dec").read_bytes() == b"rows"

    def test_wrong_key_exits(self, tmp_path, capsys):
        src = tmp_path / "app.sql"
        src.write_bytes(b"rows")
        with patch("sys.argv", ["dumpvault", "encrypt", str(src), "--key", "pw"]):
            main()

        with pytest.raises(SystemExit) as exc_info:
            with patch("sys.argv", ["dumpvault", "decrypt", str(tmp_path / "app.sql.enc"),
                                    "-o", str(tmp_path / "out.sql"), "--key", "nope"]):
                main()
        assert exc_info.value.code == 1
        assert "wrong passphrase" in capsys.readouterr().err
        assert not (tmp_path / "out.sql").exists()

    def test_refuses_to_overwrite(self, tmp_path, capsys):
        src = tmp_path / "app.sql"
        src.write_bytes(b"rows")
        (tmp_path / "app.sql.enc").write_bytes(b"existing")

        with pytest.raises(SystemExit):
            with patch("sys.argv", ["dumpvault", "encrypt", str(src), "--key", "pw"]):
                main()
        assert "already exists" in capsys.readouterr().err
        assert (tmp_path / "app.sql.enc").read_bytes() == b"existing"

    def test_missing_key_exits(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("DUMPVAULT_ENCRYPTION_KEY", raising=False)
        src = tmp_path / "app.sql"
        src.write_bytes(b"rows")

        with pytest.raises(SystemExit):
            with patch("sys.argv", ["dumpvault", "encrypt", str(src)]):
                main()
        assert "no key is configured" in capsys.readouterr().err


class TestMainArgParsing:
    @patch("dumpvault.config.load")
    def test_backup_no_job_no_all_errors(self, mock_load):
        """'backup' without job name or --all should error."""
        with pytest.raises(SystemExit):
            with patch("sys.argv", ["dumpvault", "backup"]):
                main()

    @patch("dumpvault.config.load")
    def test_no_command_errors(self, mock_load):
        with pytest.raises(SystemExit):
            with patch("sys.argv", ["dumpvault"]):
                main()

    def test_missing_config_exits(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            with patch("sys.argv", ["dumpvault", "-c", str(tmp_path / "nope.yaml"), "summary", "job1"]):
                main()
        assert exc_info.value.code == 1
        assert "Config file not found" in capsys.readouterr().err

    @pytest.mark.parametrize("error", [
        QueryError("ERROR 2003 (HY000): Can't connect to MySQL server on 'localhost'"),
        TimeoutError("SHOW DATABASES timed out after 5s"),
    ])
    @patch("dumpvault.create_engine")
    def test_server_errors_exit_cleanly(self, mock_create_engine, error, tmp_path, capsys):
        engine = MagicMock()
        engine.list_databases.side_effect = error
        mock_create_engine.return_value = engine

        with pytest.raises(SystemExit) as exc_info:
            with patch("sys.argv", ["dumpvault", "-c", _write_config(tmp_path), "scan", "job1"]):
                main()
        assert exc_info.value.code == 1
        assert str(error) in capsys.readouterr().err

    @patch("dumpvault._install_cancel_handlers")
    @patch("dumpvault.config.load")
    def test_backup_flags_parsed(self, mock_load, mock_handlers, tmp_path):
        mock_load.return_value = yaml.safe_load(open(_write_config(tmp_path)))
        cancel = threading.Event()
        mock_handlers.return_value = cancel

        with patch("sys.argv", ["dumpvault", "backup", "--all", "--prune", "--dry-run"]):
            with patch("dumpvault.cmd_backup") as mock_cmd:
                main()
                args = mock_cmd.call_args[0][0]
                assert args.all is True
                assert args.prune is True
                assert args.dry_run is True
                assert args.cancel is cancel

    @patch("dumpvault.config.load")
    def test_encrypt_does_not_load_config(self, mock_load, tmp_path):
        with patch("sys.argv", ["dumpvault", "encrypt", str(tmp_path / "x")]):
            with patch("dumpvault.cmd_encrypt") as mock_cmd:
                main()
        mock_load.assert_not_called()
        mock_cmd.assert_called_once()

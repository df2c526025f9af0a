"""Tests for settings loading, the log file helper and command utilities."""
import json
import os
import signal
import subprocess

import pytest

from domainhelper import logger, utils
from domainhelper.config import Settings, load_settings
from domainhelper.errors import ExternalCommandFailed


class TestSettings:
    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DOMAINHELPER_ROOT", raising=False)
        settings = load_settings(str(tmp_path / "missing.json"))
        assert settings == Settings()
        assert settings.default_document_root("example.com") == "/var/www/example.com"
        assert settings.certificate_dir("example.com") == "/etc/letsencrypt/live/example.com"

    def test_values_from_file(self, tmp_path, monkeypatch, log_file):
        monkeypatch.delenv("DOMAINHELPER_ROOT", raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"email": "admin@example.com", "expiry_warning_days": 14, "colour": "blue"}))
        settings = load_settings(str(path))
        assert settings.email == "admin@example.com"
        assert settings.expiry_warning_days == 14
        with open(log_file) as f:
            assert "Ignoring unknown config key 'colour'" in f.read()

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DOMAINHELPER_ROOT", raising=False)
        path = tmp_path / "config.json"
        path.write_text("{not json")
        assert load_settings(str(path)) == Settings()

    def test_root_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOMAINHELPER_ROOT", str(tmp_path))
        settings = load_settings(str(tmp_path / "missing.json"))
        assert settings.registry_file == os.path.join(str(tmp_path), "opt/domainhelper/config/domains.conf")
        assert settings.nginx_sites_available == os.path.join(str(tmp_path), "etc/nginx/sites-available")
        assert settings.language == "en"


class TestLogger:
    def test_log_line_format(self, log_file):
        line = logger.log("Domain example.com added", "INFO")
        assert line.endswith("[INFO] Domain example.com added")
        with open(log_file) as f:
            assert f.read().strip() == line
        assert logger.tail(5) == [line]

    def test_unwritable_log_is_ignored(self, tmp_path, monkeypatch):
        blocker = tmp_path / "file"
        blocker.write_text("")
        monkeypatch.setattr(logger, "LOG_FILE", str(blocker / "domain.log"))
        assert "[WARNING] still works" in logger.log("still works", "WARNING")


class TestUtils:
    def test_missing_binary(self):
        result = utils.run_command(["domainhelper-no-such-binary"])
        assert result.returncode == 127

    def test_run_checked_raises_with_tail(self, runner):
        runner.respond(["a2ensite"], returncode=1, stderr="\n".join(f"line {i}" for i in range(20)))
        with pytest.raises(ExternalCommandFailed) as excinfo:
            utils.run_checked(["a2ensite", "example.com.conf"])
        assert excinfo.value.returncode == 1
        assert excinfo.value.tail.splitlines() == [f"line {i}" for i in range(10, 20)]

    def test_atomic_write(self, tmp_path):
        path = tmp_path / "nested" / "file.conf"
        utils.atomic_write(str(path), "first")
        utils.atomic_write(str(path), "second")
        assert path.read_text() == "second"
        assert os.listdir(path.parent) == ["file.conf"]

    def test_file_lock(self, tmp_path):
        lock = tmp_path / "run" / "test.lock"
        with utils.file_lock(str(lock)):
            assert lock.exists()

    @pytest.mark.parametrize("size, expected", [(0, "0.00 B"), (2048, "2.00 KiB"), (3 * 1024 ** 3, "3.00 GiB")])
    def test_format_bytes(self, size, expected):
        assert utils.format_bytes(size) == expected


class TestRunCommandLive:
    """The real streaming runner, with real child processes."""

    @pytest.fixture
    def spawned(self, monkeypatch):
        processes = []
        real_popen = subprocess.Popen

        def recording_popen(*args, **kwargs):
            process = real_popen(*args, **kwargs)
            processes.append(process)
            return process
        monkeypatch.setattr(subprocess, "Popen", recording_popen)
        return processes

    def test_output_lines_reach_progress(self):
        seen = []
        result = utils.run_command_live(["sh", "-c", "echo one; echo two >&2; exit 3"], progress=seen.append)
        assert result.returncode == 3
        assert seen == ["one", "two"]
        assert result.stdout == "one\ntwo\n"

    def test_interrupt_terminates_child(self, spawned, log_file):
        def interrupt(line):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            utils.run_command_live(["sh", "-c", "echo started; exec sleep 30"], progress=interrupt)

        assert len(spawned) == 1
        assert spawned[0].returncode == -signal.SIGTERM
        assert spawned[0].stdout.closed
        with open(log_file) as f:
            assert "[WARNING] Interrupted, terminating: sh -c" in f.read()

    def test_missing_binary(self):
        result = utils.run_command_live(["domainhelper-no-such-binary"])
        assert result.returncode == 127
        assert "Command not found: domainhelper-no-such-binary" in result.stdout

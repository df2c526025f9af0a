"""Tests for host probing."""
import pytest

from domainhelper.modules import probe
from domainhelper.modules.registry import Backend


class TestDetectActiveWebServer:
    @pytest.mark.parametrize("active, expected", [
        ({"apache2"}, Backend.APACHE),
        ({"nginx"}, Backend.NGINX),
        ({"apache2", "nginx"}, Backend.APACHE),
        (set(), None),
    ])
    def test_detection(self, runner, active, expected):
        for service in ("apache2", "nginx"):
            runner.respond(["systemctl", "is-active", "--quiet", service],
                           returncode=0 if service in active else 3)
        assert probe.detect_active_web_server() is expected

    def test_tie_is_logged(self, runner, log_file):
        probe.detect_active_web_server()
        with open(log_file) as f:
            assert "Both apache2 and nginx report active" in f.read()


class TestPackages:
    def test_is_installed(self, runner):
        runner.respond(["dpkg-query", "-W", "-f=${Status}", "nginx"], stdout="install ok installed")
        runner.respond(["dpkg-query", "-W", "-f=${Status}", "apache2"], stdout="deinstall ok config-files")
        runner.respond(["dpkg-query", "-W", "-f=${Status}", "mysql-server"], returncode=1)
        assert probe.is_installed("nginx") is True
        assert probe.is_installed("apache2") is False
        assert probe.is_installed("mysql-server") is False

    def test_php_versions(self, runner):
        runner.respond(["dpkg-query", "-W", "-f=${Package} ${Status}\n", "php*-fpm"], stdout=(
            "php8.2-fpm install ok installed\n"
            "php7.4-fpm deinstall ok config-files\n"
            "php8.1-fpm install ok installed\n"
        ))
        assert probe.installed_php_versions() == ["8.1", "8.2"]

    def test_no_php(self, runner):
        runner.respond(["dpkg-query"], returncode=1)
        assert probe.installed_php_versions() == []

    def test_databases(self, runner):
        runner.respond(["dpkg-query"], returncode=1)
        runner.respond(["dpkg-query", "-W", "-f=${Status}", "mariadb-server"], stdout="install ok installed")
        assert probe.installed_databases() == ["MariaDB"]


class TestHost:
    def test_read_os_release(self, tmp_path):
        path = tmp_path / "os-release"
        path.write_text('NAME="Ubuntu"\nPRETTY_NAME="Ubuntu 22.04.4 LTS"\nID=ubuntu\n')
        assert probe.read_os_release(str(path)) == "Ubuntu 22.04.4 LTS"

    def test_read_os_release_missing(self, tmp_path):
        assert probe.read_os_release(str(tmp_path / "missing"))

    def test_probe_host(self, runner, settings):
        runner.respond(["systemctl", "is-active", "--quiet", "apache2"], returncode=3)
        ctx = probe.probe_host(settings)
        assert ctx.settings is settings
        assert ctx.web_server is Backend.NGINX

    def test_system_overview(self):
        overview = probe.system_overview()
        assert set(overview) == {"hostname", "uptime", "memory", "memory_percent", "load"}
        assert "/" in overview["memory"]

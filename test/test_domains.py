"""Tests for the add/remove domain flows."""
import os
from dataclasses import replace

import pytest

from domainhelper.errors import BackendMismatch, ExternalCommandFailed, NoWebServer, NotFound, ValidationError
from domainhelper.modules.certificates import read_certificate
from domainhelper.modules.domains import add_domain, purge_document_root, remove_domain, switch_web_server
from domainhelper.modules.probe import HostContext
from domainhelper.modules.registry import Backend, DomainRecord, SslState
from domainhelper.modules.vhost import Provisioner


class TestAddDomain:
    def test_add_creates_record_and_site(self, ctx, registry, provisioner, runner, settings):
        record = add_domain(ctx, registry, provisioner, "Example.com")

        assert record.name == "example.com"
        assert record.backend is Backend.NGINX
        assert record.document_root == settings.default_document_root("example.com")
        assert record.ssl_state is SslState.NONE
        assert registry.get("example.com") == record
        assert provisioner.site_state("example.com", Backend.NGINX) == "enabled"

    def test_custom_document_root(self, ctx, registry, provisioner, runner, tmp_path):
        root = str(tmp_path / "sites" / "custom")
        record = add_domain(ctx, registry, provisioner, "example.com", document_root=root + "/")
        assert record.document_root == root
        assert os.path.isdir(root)

    def test_document_root_with_newline_is_rejected(self, ctx, registry, provisioner, runner, tmp_path):
        root = str(tmp_path / "www" / "a") + "\nb"
        with pytest.raises(ValidationError):
            add_domain(ctx, registry, provisioner, "example.com", document_root=root)
        assert runner.calls == []
        assert registry.find("example.com") is None
        assert not provisioner.config_exists("example.com", Backend.NGINX)

    def test_invalid_domain_touches_nothing(self, ctx, registry, provisioner, runner, settings):
        with pytest.raises(ValidationError):
            add_domain(ctx, registry, provisioner, "not a domain!!")
        assert runner.calls == []
        assert not os.path.exists(settings.registry_file)

    def test_no_web_server(self, settings, registry, runner):
        ctx = HostContext(settings=settings)
        with pytest.raises(NoWebServer):
            add_domain(ctx, registry, Provisioner(ctx), "example.com")
        assert runner.calls == []

    def test_duplicate_without_force_is_rejected(self, ctx, registry, provisioner, runner):
        add_domain(ctx, registry, provisioner, "example.com")
        runner.calls.clear()
        with pytest.raises(ValidationError) as excinfo:
            add_domain(ctx, registry, provisioner, "example.com")
        assert "--force" in excinfo.value.suggestion
        assert runner.calls == []

    def test_existing_config_without_record_is_rejected(self, ctx, registry, provisioner, runner):
        path = provisioner.config_path("example.com", Backend.NGINX)
        os.makedirs(os.path.dirname(path))
        with open(path, "w") as f:
            f.write("server {}\n")
        with pytest.raises(ValidationError):
            add_domain(ctx, registry, provisioner, "example.com")

    def test_forced_re_add_keeps_one_record(self, ctx, registry, provisioner, runner, tmp_path):
        root = str(tmp_path / "sites" / "example")
        first = add_domain(ctx, registry, provisioner, "example.com", document_root=root)
        second = add_domain(ctx, registry, provisioner, "example.com", force=True)

        records = [r for r in registry.list() if r.name == "example.com"]
        assert len(records) == 1
        assert second.created_at == first.created_at
        assert second.document_root == root

    def test_forced_re_add_keeps_tls(self, ctx, registry, provisioner, runner, settings, make_certificate):
        record = add_domain(ctx, registry, provisioner, "example.com")
        make_certificate("example.com")
        provisioner.install_tls(record, read_certificate(settings, "example.com"))
        registry.upsert(record.touched(ssl_state=SslState.ACTIVE))

        again = add_domain(ctx, registry, provisioner, "example.com", force=True)

        assert again.ssl_state is SslState.ACTIVE
        assert provisioner.has_tls("example.com", Backend.NGINX)

    def test_forced_re_add_of_other_backend_is_rejected(self, ctx, registry, provisioner, runner):
        registry.upsert(DomainRecord(name="example.com", backend=Backend.APACHE, document_root="/var/www/example.com"))
        with pytest.raises(BackendMismatch):
            add_domain(ctx, registry, provisioner, "example.com", force=True)
        assert registry.get("example.com").backend is Backend.APACHE


class TestRemoveDomain:
    def test_remove_site_and_record(self, ctx, registry, provisioner, runner, settings):
        record = add_domain(ctx, registry, provisioner, "example.com")
        remove_domain(ctx, registry, provisioner, "example.com")

        assert registry.find("example.com") is None
        assert provisioner.site_state("example.com", Backend.NGINX) == "missing"
        assert os.path.isdir(record.document_root)
        assert not runner.ran("certbot", "delete")

    def test_remove_with_purge_and_certificate(self, ctx, registry, provisioner, runner, make_certificate):
        record = add_domain(ctx, registry, provisioner, "example.com")
        make_certificate("example.com")

        remove_domain(ctx, registry, provisioner, "example.com", purge_files=True)

        assert not os.path.exists(record.document_root)
        assert runner.ran("certbot", "delete", "--cert-name", "example.com", "--non-interactive")

    def test_keep_certificate(self, ctx, registry, provisioner, runner, make_certificate):
        add_domain(ctx, registry, provisioner, "example.com")
        make_certificate("example.com")
        remove_domain(ctx, registry, provisioner, "example.com", delete_certificate=False)
        assert not runner.ran("certbot", "delete")

    def test_remove_unknown_domain(self, ctx, registry, provisioner, runner):
        with pytest.raises(NotFound):
            remove_domain(ctx, registry, provisioner, "missing.example.com")

    def test_purge_refuses_paths_outside_www_root(self, settings, tmp_path):
        outside = tmp_path / "elsewhere"
        outside.mkdir()
        assert purge_document_root(settings, str(outside)) is False
        assert outside.exists()
        assert purge_document_root(settings, settings.www_root) is False


class TestSwitchWebServer:
    """Moving every domain from Nginx to Apache."""

    @pytest.fixture
    def apache_installed(self, runner):
        runner.respond(["dpkg-query", "-W", "-f=${Status}", "apache2"], stdout="install ok installed")

    @pytest.fixture
    def domains(self, ctx, registry, provisioner, runner, make_certificate):
        add_domain(ctx, registry, provisioner, "example.com")
        add_domain(ctx, registry, provisioner, "secure.example.com")
        registry.upsert(registry.get("secure.example.com").touched(ssl_state=SslState.ACTIVE))
        make_certificate("secure.example.com")
        runner.calls.clear()

    def test_moves_plain_and_tls_sites(self, ctx, registry, runner, domains, apache_installed):
        report = switch_web_server(ctx, registry, Backend.APACHE)

        assert report.previous is Backend.NGINX
        assert report.migrated == ["example.com", "secure.example.com"]
        assert report.failed == []
        assert not report.installed
        assert runner.ran("systemctl", "stop", "nginx")
        assert runner.ran("systemctl", "disable", "nginx")
        assert runner.ran("systemctl", "enable", "--now", "apache2")
        assert runner.ran("a2ensite", "secure.example.com.conf")

        apache = Provisioner(replace(ctx, web_server=Backend.APACHE))
        assert apache.has_tls("secure.example.com", Backend.APACHE)
        assert not apache.has_tls("example.com", Backend.APACHE)
        moved = registry.get("secure.example.com")
        assert moved.backend is Backend.APACHE
        assert moved.ssl_state is SslState.ACTIVE

    def test_installs_missing_web_server(self, ctx, registry, runner, domains):
        report = switch_web_server(ctx, registry, Backend.APACHE)
        assert report.installed
        assert runner.ran("apt-get", "install", "-y", "apache2")
        assert registry.get("example.com").backend is Backend.APACHE

    def test_failed_sites_stay_and_can_be_retried(self, ctx, registry, runner, domains, apache_installed):
        runner.respond(["apache2ctl", "configtest"], returncode=1, stdout="AH00526: Syntax error")
        report = switch_web_server(ctx, registry, Backend.APACHE)

        assert report.migrated == []
        assert [name for name, _ in report.failed] == ["example.com", "secure.example.com"]
        assert registry.get("example.com").backend is Backend.NGINX
        apache = Provisioner(replace(ctx, web_server=Backend.APACHE))
        assert not apache.config_exists("example.com", Backend.APACHE)

        runner.respond(["apache2ctl", "configtest"])
        retry = switch_web_server(replace(ctx, web_server=Backend.APACHE), registry, Backend.APACHE)
        assert retry.migrated == ["example.com", "secure.example.com"]
        assert runner.count("systemctl", "stop", "nginx") == 1
        assert registry.get("example.com").backend is Backend.APACHE

    def test_start_failure_restarts_previous_server(self, ctx, registry, runner, domains, apache_installed):
        runner.respond(["systemctl", "enable", "--now", "apache2"], returncode=1, stdout="Job for apache2.service failed")
        with pytest.raises(ExternalCommandFailed):
            switch_web_server(ctx, registry, Backend.APACHE)
        assert runner.ran("systemctl", "enable", "--now", "nginx")
        assert registry.get("example.com").backend is Backend.NGINX

    def test_active_record_without_certificate_moves_as_plain(self, ctx, registry, provisioner, runner, apache_installed):
        add_domain(ctx, registry, provisioner, "example.com")
        registry.upsert(registry.get("example.com").touched(ssl_state=SslState.ACTIVE))

        report = switch_web_server(ctx, registry, Backend.APACHE)

        assert report.migrated == ["example.com"]
        assert registry.get("example.com").ssl_state is SslState.NONE

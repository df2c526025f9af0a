"""Tests for the single-domain status check."""
import pytest

from domainhelper.errors import NotFound
from domainhelper.modules.domains import add_domain
from domainhelper.modules.status import check_domain_status

SERVER_IP = "203.0.113.10"
OTHER_IP = "198.51.100.7"


class TestCheckDomainStatus:
    def test_healthy_domain_without_certificate(self, ctx, registry, provisioner, runner):
        add_domain(ctx, registry, provisioner, "example.com")
        status = check_domain_status(ctx, registry, provisioner, "example.com")

        assert status.dns_ip == SERVER_IP
        assert status.dns_matches
        assert status.http_status == 200
        assert status.site_state == "enabled"
        assert status.root_exists
        assert status.file_count == 1
        assert status.certificate is None
        assert status.recommendations() == ["Install an SSL certificate"]

    def test_dns_pointing_elsewhere(self, ctx, registry, provisioner, runner, fake_network, make_certificate):
        add_domain(ctx, registry, provisioner, "example.com")
        make_certificate("example.com")
        fake_network.records["example.com"] = OTHER_IP
        status = check_domain_status(ctx, registry, provisioner, "example.com")

        assert not status.dns_matches
        assert 89 <= status.days_left <= 90
        assert status.recommendations() == [f"Update the DNS A record to point to {SERVER_IP}"]

    def test_missing_site_and_files(self, ctx, registry, provisioner, runner, fake_network):
        record = add_domain(ctx, registry, provisioner, "example.com")
        provisioner.remove("example.com", record.backend)
        fake_network.records["example.com"] = None
        status = check_domain_status(ctx, registry, provisioner, "example.com")

        tips = status.recommendations()
        assert "Configure a DNS A record for example.com" in tips
        assert "Recreate the virtual host configuration (add --force)" in tips

    def test_unknown_domain(self, ctx, registry, provisioner):
        with pytest.raises(NotFound):
            check_domain_status(ctx, registry, provisioner, "missing.example.com")

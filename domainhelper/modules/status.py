"""One-domain health check: DNS, HTTP(S), certificate, site and files."""
import os
from dataclasses import dataclass, field
from typing import List, Optional

from domainhelper.modules import network
from domainhelper.modules.certificates import CertificateRecord, read_certificate
from domainhelper.modules.registry import DomainRecord, validate_domain


@dataclass
class DomainStatus:
    record: DomainRecord
    dns_ip: Optional[str] = None
    www_dns_ip: Optional[str] = None
    server_ip: Optional[str] = None
    http_status: Optional[int] = None
    https_status: Optional[int] = None
    certificate: Optional[CertificateRecord] = None
    days_left: Optional[int] = None
    site_state: str = "missing"
    root_exists: bool = False
    file_count: int = 0
    expiry_warning_days: int = 30

    @property
    def dns_matches(self):
        return bool(self.dns_ip and self.server_ip and self.dns_ip == self.server_ip)

    def recommendations(self):
        tips: List[str] = []
        if not self.dns_ip:
            tips.append(f"Configure a DNS A record for {self.record.name}")
        elif self.server_ip and self.dns_ip != self.server_ip:
            tips.append(f"Update the DNS A record to point to {self.server_ip}")
        if self.site_state == "missing":
            tips.append("Recreate the virtual host configuration (add --force)")
        elif self.site_state == "disabled":
            tips.append("Enable the virtual host configuration")
        if self.certificate is None:
            tips.append("Install an SSL certificate")
        elif self.days_left is not None and self.days_left < self.expiry_warning_days:
            tips.append("Renew the SSL certificate")
        if not self.root_exists:
            tips.append(f"Create the document root {self.record.document_root}")
        elif self.file_count == 0:
            tips.append("Upload website files to the document root")
        return tips


def count_files(path):
    total = 0
    for _, _, files in os.walk(path):
        total += len(files)
    return total


def check_domain_status(ctx, registry, provisioner, domain):
    record = registry.get(validate_domain(domain))
    timeout = ctx.settings.http_timeout
    status = DomainStatus(record=record, expiry_warning_days=ctx.settings.expiry_warning_days)

    status.dns_ip = network.lookup_a_record(record.name)
    status.www_dns_ip = network.lookup_a_record(f"www.{record.name}")
    status.server_ip = network.get_server_ip()
    status.http_status = network.probe_http(f"http://{record.name}", timeout=timeout)
    status.https_status = network.probe_http(f"https://{record.name}", timeout=timeout)

    status.certificate = read_certificate(ctx.settings, record.name)
    if status.certificate:
        status.days_left = status.certificate.days_left()

    status.site_state = provisioner.site_state(record.name, record.backend)
    status.root_exists = os.path.isdir(record.document_root)
    if status.root_exists:
        status.file_count = count_files(record.document_root)
    return status

"""Adding, removing and moving managed domains: registry record plus site config."""
import os
import shutil
from dataclasses import dataclass, field, replace
from typing import List, Optional

from domainhelper import utils
from domainhelper.errors import DomainHelperError, NoWebServer, ValidationError
from domainhelper.logger import log
from domainhelper.modules import installer
from domainhelper.modules.certificates import read_certificate
from domainhelper.modules.registry import (
    Backend, DomainRecord, SslState, now, validate_document_root, validate_domain,
)
from domainhelper.modules.vhost import Provisioner


@dataclass
class SwitchReport:
    previous: Optional[Backend]
    target: Backend
    installed: bool = False
    migrated: List[str] = field(default_factory=list)
    failed: List[tuple] = field(default_factory=list)


def add_domain(ctx, registry, provisioner, domain, document_root=None, force=False):
    """
    Registers `domain` on the active web server and provisions its site.

    Everything is validated before the filesystem or any service is touched.
    With `force`, an existing domain is re-provisioned in place: its record
    keeps created_at and its document root, and an active certificate stays
    installed.
    """
    domain = validate_domain(domain)
    if document_root is not None:
        document_root = validate_document_root(document_root)
    if ctx.web_server is None:
        raise NoWebServer("No web server is running", domain=domain,
                          suggestion="Install one with 'install-webserver apache|nginx'.")
    backend = ctx.web_server

    existing = registry.find(domain)
    config_present = provisioner.config_exists(domain, backend)
    if (existing or config_present) and not force:
        raise ValidationError(f"Domain {domain} already exists", domain=domain,
                              suggestion="Use --force to re-provision it.")

    certificate = None
    if existing:
        provisioner.ensure_backend(existing.backend)
        root = document_root or existing.document_root
        record = existing.touched(document_root=root)
        if existing.ssl_state == SslState.ACTIVE:
            certificate = read_certificate(ctx.settings, domain)
            if certificate is None:
                log(f"{domain} is marked SSL-active but has no certificate on disk; provisioning plain HTTP", "WARNING")
                record = record.touched(ssl_state=SslState.NONE)
    else:
        root = document_root or ctx.settings.default_document_root(domain)
        stamp = now()
        record = DomainRecord(name=domain, backend=backend, document_root=root,
                              created_at=stamp, modified_at=stamp)

    provisioner.create(domain, backend, record.document_root, certificate=certificate)
    record = registry.upsert(record)
    log(f"Domain {domain} {'re-provisioned' if existing else 'added'} ({backend.label}, root {record.document_root})")
    return record


def remove_domain(ctx, registry, provisioner, domain, purge_files=False, delete_certificate=True):
    """
    Removes the site, then the record, then (optionally) the files and the
    certificate. Files are only purged when they live under www_root.
    """
    domain = validate_domain(domain)
    record = registry.get(domain)
    provisioner.ensure_backend(record.backend)

    provisioner.remove(domain, record.backend)
    registry.remove(domain)

    if purge_files:
        purge_document_root(ctx.settings, record.document_root)

    if delete_certificate and os.path.isdir(ctx.settings.certificate_dir(domain)):
        utils.run_checked(["certbot", "delete", "--cert-name", domain, "--non-interactive"], domain=domain)
        log(f"Certificate for {domain} deleted")

    log(f"Domain {domain} removed")
    return record


def purge_document_root(settings, document_root):
    """Deletes a document root, refusing anything outside www_root."""
    www_root = os.path.realpath(settings.www_root)
    target = os.path.realpath(document_root)
    if target == www_root or os.path.commonpath([www_root, target]) != www_root:
        log(f"Not purging {document_root}: outside {settings.www_root}", "WARNING")
        return False
    if not os.path.isdir(target):
        return False
    shutil.rmtree(target)
    log(f"Purged document root {document_root}")
    return True


def switch_web_server(ctx, registry, target, progress=None):
    """
    Stops the active web server, starts `target` (installing it when needed)
    and re-provisions every domain of the other backend onto it.

    A domain whose site cannot be created keeps its old record and is listed
    in the report's `failed`; the remaining domains still move. When `target`
    is already active only those leftover domains are moved. Site files of
    the old backend are left on disk, disabled along with its service.
    """
    previous = ctx.web_server
    records = [record for record in registry.list() if record.backend is not target]

    installed = False
    if previous is not target:
        if previous is not None:
            installer.stop_web_server(previous, progress)
        try:
            installed = installer.start_web_server(target, progress)
        except BaseException:
            if previous is not None:
                log(f"Starting {target.label} failed; restarting {previous.label}", "ERROR")
                utils.run_command(["systemctl", "enable", "--now", previous.service])
            raise

    report = SwitchReport(previous=previous, target=target, installed=installed)
    provisioner = Provisioner(replace(ctx, web_server=target))
    for record in records:
        updated = record.touched(backend=target)
        certificate = None
        if record.ssl_state == SslState.ACTIVE:
            certificate = read_certificate(ctx.settings, record.name)
            if certificate is None:
                log(f"{record.name} is marked SSL-active but has no certificate on disk; moving it as plain HTTP", "WARNING")
                updated = updated.touched(ssl_state=SslState.NONE)
        try:
            provisioner.create(record.name, target, record.document_root, certificate=certificate)
        except DomainHelperError as e:
            log(f"Could not move {record.name} to {target.label}: {e.message}", "ERROR")
            report.failed.append((record.name, e.message))
            continue
        registry.upsert(updated)
        report.migrated.append(record.name)

    source = previous.label if previous else "none"
    log(f"Web server switched from {source} to {target.label}: "
        f"{len(report.migrated)} domain(s) moved, {len(report.failed)} failed")
    return report

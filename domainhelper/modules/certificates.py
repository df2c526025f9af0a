"""
Let's Encrypt certificates through certbot: issue, renew, reconcile, remove.

certbot only obtains the certificate (webroot challenge); the TLS site
config is written by the Provisioner so that it goes through the same
validate-then-reload path as every other change.
"""
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from crontab import CronTab
from cryptography import x509

from domainhelper import utils
from domainhelper.errors import IssuanceFailed, OperationCancelled, ValidationError
from domainhelper.logger import log
from domainhelper.modules import network
from domainhelper.modules.registry import SslState, validate_domain

EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

RENEWAL_COMMENT = "domainhelper-ssl-renew"
RENEWAL_SCHEDULE = "0 12 * * *"


class FailureReason(str, Enum):
    DNS_MISMATCH = "dns_mismatch"
    PORT_BLOCKED = "port_blocked"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


# Checked in order; the first reason with a matching marker wins.
FAILURE_MARKERS = (
    (FailureReason.RATE_LIMITED, (
        "too many certificates", "ratelimited", "rate limit",
        "too many failed authorizations", "too many new orders",
    )),
    (FailureReason.PORT_BLOCKED, (
        "connection refused", "timeout during connect", "likely firewall problem",
        "connection reset", "fetching http",
    )),
    (FailureReason.DNS_MISMATCH, (
        "dns problem", "nxdomain", "no valid ip addresses",
        "unauthorized", "invalid response from",
    )),
)


@dataclass
class CertificateRecord:
    domain: str
    issuer: str
    not_before: datetime
    not_after: datetime
    cert_path: str
    key_path: str
    fullchain_path: str

    def days_left(self, now=None):
        now = now or datetime.now(timezone.utc)
        return (self.not_after - now).days

    def is_expired(self, now=None):
        now = now or datetime.now(timezone.utc)
        return self.not_after <= now


@dataclass
class RenewalReport:
    renewed: List[str] = field(default_factory=list)
    reloaded: List[str] = field(default_factory=list)
    success: bool = True
    output: str = ""


@dataclass
class SslStatusRow:
    record: object
    certificate: Optional[CertificateRecord]
    label: str
    days_left: Optional[int] = None


def read_certificate(settings, domain):
    """Parses the live certificate for `domain`; None when it is absent or unreadable."""
    directory = settings.certificate_dir(domain)
    cert_path = os.path.join(directory, "cert.pem")
    key_path = os.path.join(directory, "privkey.pem")
    fullchain_path = os.path.join(directory, "fullchain.pem")
    if not (os.path.exists(cert_path) and os.path.exists(key_path)):
        return None
    try:
        with open(cert_path, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read())
    except (OSError, ValueError) as e:
        log(f"Cannot parse certificate {cert_path}: {e}", "WARNING")
        return None
    return CertificateRecord(
        domain=domain,
        issuer=cert.issuer.rfc4514_string(),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        cert_path=cert_path,
        key_path=key_path,
        fullchain_path=fullchain_path if os.path.exists(fullchain_path) else cert_path,
    )


def classify_failure(output):
    text = (output or "").lower()
    for reason, markers in FAILURE_MARKERS:
        if any(marker in text for marker in markers):
            return reason
    return FailureReason.UNKNOWN


def validate_email(email):
    email = (email or "").strip()
    if not EMAIL_RE.match(email):
        raise ValidationError(f"Invalid email address: {email!r}",
                              suggestion="Let's Encrypt needs a valid contact email, e.g. admin@example.com")
    return email


class CertificateManager:
    def __init__(self, ctx, registry, provisioner):
        self.ctx = ctx
        self.settings = ctx.settings
        self.registry = registry
        self.provisioner = provisioner

    def preflight(self, domain):
        """Advisory checks before talking to Let's Encrypt. Returns a list of warnings."""
        warnings = []
        code = network.probe_http(f"http://{domain}", timeout=self.settings.http_timeout)
        if code != 200:
            shown = code if code is not None else "no response"
            warnings.append(f"http://{domain} is not reachable (HTTP {shown})")
        if network.lookup_a_record(domain) is None:
            warnings.append(f"{domain} has no DNS A record")
        return warnings

    def issue(self, domain, email, confirm=None, include_www=None, staging=False, progress=None):
        """
        Obtains a certificate for a registered domain and switches its site to
        HTTPS. `confirm(message)` is asked when the pre-flight finds problems;
        returning False cancels before anything is changed. On any failure,
        including Ctrl+C, the registry record is put back as it was.
        """
        domain = validate_domain(domain)
        email = validate_email(email)
        original = self.registry.get(domain)
        self.provisioner.ensure_backend(original.backend)

        warnings = self.preflight(domain)
        for warning in warnings:
            log(f"SSL pre-flight for {domain}: {warning}", "WARNING")
        if warnings and confirm is not None:
            message = "; ".join(warnings) + ". Continue anyway?"
            if not confirm(message):
                log(f"SSL issuance for {domain} cancelled by user")
                raise OperationCancelled(f"SSL issuance for {domain} cancelled", domain=domain)

        if include_www is None:
            include_www = network.lookup_a_record(f"www.{domain}") is not None

        command = [
            "certbot", "certonly", "--webroot", "-w", original.document_root,
            "--cert-name", domain, "-d", domain,
        ]
        if include_www:
            command += ["-d", f"www.{domain}"]
        command += ["--email", email, "--agree-tos", "--non-interactive"]
        if staging:
            command.append("--staging")

        pending = self.registry.upsert(original.touched(ssl_state=SslState.PENDING))
        log(f"Requesting certificate for {domain} (www={include_www}, staging={staging})")
        try:
            result = utils.run_command_live(command, message=f"Requesting certificate for {domain}...",
                                            progress=progress)
            if result.returncode != 0:
                reason = classify_failure(result.stdout)
                log(f"certbot failed for {domain} ({reason.value})", "ERROR")
                raise IssuanceFailed(domain, reason, result.stdout)
            certificate = read_certificate(self.settings, domain)
            if certificate is None:
                raise IssuanceFailed(domain, FailureReason.UNKNOWN,
                                     result.stdout + f"\nNo certificate found in {self.settings.certificate_dir(domain)}")
            self.provisioner.install_tls(pending, certificate)
        except BaseException:
            self.registry.upsert(original)
            log(f"Restored registry record for {domain} after failed issuance", "WARNING")
            raise

        record = self.registry.upsert(pending.touched(ssl_state=SslState.ACTIVE))
        log(f"SSL certificate installed for {domain}, valid until {certificate.not_after:%Y-%m-%d}")
        return record, certificate

    def renew_all(self, dry_run=False, progress=None):
        """Runs certbot renew once and reloads each affected web server once."""
        tracked = [r for r in self.registry.list() if r.ssl_state in (SslState.ACTIVE, SslState.EXPIRED)]
        before = {}
        for record in tracked:
            certificate = read_certificate(self.settings, record.name)
            before[record.name] = certificate.not_after if certificate else None

        command = ["certbot", "renew", "--non-interactive"]
        if dry_run:
            command.append("--dry-run")
        log(f"Running certificate renewal{' (dry run)' if dry_run else ''}")
        result = utils.run_command_live(command, message="Renewing certificates...", progress=progress)
        report = RenewalReport(success=result.returncode == 0, output=result.stdout)
        if not report.success:
            log(f"certbot renew exited with {result.returncode}", "ERROR")
        if dry_run:
            return report

        backends = []
        for record in tracked:
            certificate = read_certificate(self.settings, record.name)
            if certificate is None or certificate.not_after == before[record.name]:
                continue
            report.renewed.append(record.name)
            if record.ssl_state != SslState.ACTIVE:
                self.registry.upsert(record.touched(ssl_state=SslState.ACTIVE))
            if record.backend not in backends:
                backends.append(record.backend)

        for backend in backends:
            if backend != self.ctx.web_server:
                log(f"Renewed certificates belong to {backend.label}, which is not running; not reloading", "WARNING")
                continue
            self.provisioner.reload(backend)
            report.reloaded.append(backend.value)

        log(f"Renewal finished: {len(report.renewed)} renewed, reloaded: {', '.join(report.reloaded) or 'none'}")
        return report

    def reconcile(self, now=None):
        """Brings ssl_state in line with what is on disk. Returns (name, old, new) tuples."""
        now = now or datetime.now(timezone.utc)
        changes = []
        for record in self.registry.list():
            if record.ssl_state == SslState.NONE:
                continue
            certificate = read_certificate(self.settings, record.name)
            if record.ssl_state == SslState.PENDING:
                installed = certificate is not None and not certificate.is_expired(now) \
                    and self.provisioner.has_tls(record.name, record.backend)
                state = SslState.ACTIVE if installed else SslState.NONE
            elif certificate is None:
                state = SslState.NONE
            elif certificate.is_expired(now):
                state = SslState.EXPIRED
            else:
                state = SslState.ACTIVE
            if state != record.ssl_state:
                self.registry.upsert(record.touched(ssl_state=state))
                log(f"Reconciled {record.name}: {record.ssl_state.value} -> {state.value}")
                changes.append((record.name, record.ssl_state, state))
        return changes

    def remove(self, domain):
        """Switches the site back to plain HTTP and deletes the certificate."""
        record = self.registry.get(validate_domain(domain))
        self.provisioner.ensure_backend(record.backend)
        if self.provisioner.has_tls(record.name, record.backend):
            self.provisioner.remove_tls(record)
        record = self.registry.upsert(record.touched(ssl_state=SslState.NONE))
        if os.path.isdir(self.settings.certificate_dir(record.name)):
            utils.run_checked(["certbot", "delete", "--cert-name", record.name, "--non-interactive"],
                              domain=record.name)
        log(f"SSL removed for {record.name}")
        return record

    def status_rows(self, now=None):
        now = now or datetime.now(timezone.utc)
        rows = []
        for record in self.registry.list():
            certificate = read_certificate(self.settings, record.name)
            if certificate is None:
                label = "none" if record.ssl_state == SslState.NONE else "missing"
                rows.append(SslStatusRow(record, None, label))
                continue
            days = certificate.days_left(now)
            if certificate.is_expired(now):
                label = "expired"
            elif days < self.settings.expiry_warning_days:
                label = "expiring"
            else:
                label = "valid"
            rows.append(SslStatusRow(record, certificate, label, days))
        return rows


def renewal_command(settings):
    return f"{sys.executable} -m domainhelper ssl-renew >> {settings.renewal_log} 2>&1"


def setup_autorenewal(settings, cron=None, command=None):
    """Installs (or replaces) the daily renewal job in root's crontab."""
    cron = cron if cron is not None else CronTab(user="root")
    command = command or renewal_command(settings)
    cron.remove_all(comment=RENEWAL_COMMENT)
    job = cron.new(command=command, comment=RENEWAL_COMMENT)
    job.setall(RENEWAL_SCHEDULE)
    cron.write()
    log(f"Automatic SSL renewal scheduled ({RENEWAL_SCHEDULE}): {command}")
    return job

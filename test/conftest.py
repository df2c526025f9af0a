"""Shared fixtures: a throwaway filesystem root, a fake command runner, fake network, certificates."""
import os
import subprocess
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from domainhelper import logger, utils
from domainhelper.config import Settings
from domainhelper.modules import network
from domainhelper.modules.certificates import CertificateManager
from domainhelper.modules.probe import HostContext
from domainhelper.modules.registry import Backend, DomainRegistry
from domainhelper.modules.vhost import Provisioner

SERVER_IP = "203.0.113.10"


class FakeRunner:
    """Records every command and answers from prefix rules; later rules win."""

    def __init__(self):
        self.calls = []
        self.rules = []
        self.missing_tools = set()

    def respond(self, prefix, returncode=0, stdout="", stderr="", action=None):
        self.rules.insert(0, (list(prefix), returncode, stdout, stderr, action))

    def _answer(self, command):
        command = list(command)
        self.calls.append(command)
        for prefix, returncode, stdout, stderr, action in self.rules:
            if command[:len(prefix)] == prefix:
                if action:
                    action(command)
                return subprocess.CompletedProcess(command, returncode, stdout, stderr)
        return subprocess.CompletedProcess(command, 0, "", "")

    def run(self, command, timeout=None, input_text=None):
        return self._answer(command)

    def live(self, command, message="", progress=None):
        result = self._answer(command)
        output = (result.stdout or "") + (result.stderr or "")
        if progress:
            for line in output.splitlines():
                progress(line)
        return subprocess.CompletedProcess(result.args, result.returncode, output, "")

    def ran(self, *prefix):
        return any(call[:len(prefix)] == list(prefix) for call in self.calls)

    def count(self, *prefix):
        return sum(1 for call in self.calls if call[:len(prefix)] == list(prefix))


class FakeNetwork:
    def __init__(self):
        self.records = {}
        self.default_ip = SERVER_IP
        self.http = {}
        self.default_http = 200
        self.server_ip = SERVER_IP

    def lookup_a_record(self, domain):
        return self.records.get(domain, self.default_ip)

    def probe_http(self, url, timeout=10):
        return self.http.get(url, self.default_http)

    def get_server_ip(self, timeout=5):
        return self.server_ip


@pytest.fixture(autouse=True)
def log_file(tmp_path, monkeypatch):
    """Keep log lines out of /opt during tests."""
    path = str(tmp_path / "logs" / "domain.log")
    monkeypatch.setattr(logger, "LOG_FILE", path)
    return path


@pytest.fixture(autouse=True)
def fake_network(monkeypatch):
    fake = FakeNetwork()
    monkeypatch.setattr(network, "lookup_a_record", fake.lookup_a_record)
    monkeypatch.setattr(network, "probe_http", fake.probe_http)
    monkeypatch.setattr(network, "get_server_ip", fake.get_server_ip)
    return fake


@pytest.fixture
def runner(monkeypatch):
    fake = FakeRunner()
    monkeypatch.setattr(utils, "run_command", fake.run)
    monkeypatch.setattr(utils, "run_command_live", fake.live)
    monkeypatch.setattr(utils, "is_tool_installed", lambda name: name not in fake.missing_tools)
    return fake


@pytest.fixture
def settings(tmp_path):
    return Settings.rooted(str(tmp_path / "root"))


@pytest.fixture
def ctx(settings):
    return HostContext(settings=settings, web_server=Backend.NGINX, os_name="Debian GNU/Linux 12 (bookworm)")


@pytest.fixture
def apache_ctx(settings):
    return HostContext(settings=settings, web_server=Backend.APACHE)


@pytest.fixture
def registry(settings):
    return DomainRegistry(settings.registry_file)


@pytest.fixture
def provisioner(ctx, runner):
    return Provisioner(ctx)


@pytest.fixture
def manager(ctx, registry, provisioner):
    return CertificateManager(ctx, registry, provisioner)


@pytest.fixture
def make_certificate(settings):
    """Writes a self-signed certificate in certbot's live layout for a domain."""
    def _make(domain, not_after=None, not_before=None):
        now = datetime.now(timezone.utc)
        not_after = not_after or now + timedelta(days=90)
        not_before = not_before or min(now, not_after) - timedelta(days=30)
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .sign(key, hashes.SHA256())
        )
        directory = settings.certificate_dir(domain)
        os.makedirs(directory, exist_ok=True)
        pem = cert.public_bytes(serialization.Encoding.PEM)
        for filename in ("cert.pem", "fullchain.pem"):
            with open(os.path.join(directory, filename), "wb") as f:
                f.write(pem)
        with open(os.path.join(directory, "privkey.pem"), "wb") as f:
            f.write(key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ))
        return cert
    return _make

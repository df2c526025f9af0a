from dataclasses import dataclass

from domainhelper.modules.certificates import CertificateManager
from domainhelper.modules.probe import HostContext, probe_host
from domainhelper.modules.registry import DomainRegistry
from domainhelper.modules.vhost import Provisioner


@dataclass
class Session:
    """The probed host plus the components wired to it, built once per command."""
    ctx: HostContext
    registry: DomainRegistry
    provisioner: Provisioner
    certificates: CertificateManager


def open_session(settings):
    ctx = probe_host(settings)
    registry = DomainRegistry(settings.registry_file)
    provisioner = Provisioner(ctx)
    return Session(ctx, registry, provisioner, CertificateManager(ctx, registry, provisioner))

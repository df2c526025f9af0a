"""Package installation for the web servers and certbot."""
from domainhelper import utils
from domainhelper.errors import ExternalCommandFailed
from domainhelper.logger import log
from domainhelper.modules import probe
from domainhelper.modules.registry import Backend

WEB_SERVER_PACKAGES = {
    Backend.APACHE: "apache2",
    Backend.NGINX: "nginx",
}

CERTBOT_PLUGINS = {
    Backend.APACHE: "python3-certbot-apache",
    Backend.NGINX: "python3-certbot-nginx",
}


def _run_live(command, message, progress=None):
    result = utils.run_command_live(command, message=message, progress=progress)
    if result.returncode != 0:
        log(f"Command failed ({result.returncode}): {' '.join(command)}", "ERROR")
        raise ExternalCommandFailed(command, result.returncode, result.stdout)
    return result


def install_web_server(backend, progress=None):
    package = WEB_SERVER_PACKAGES[backend]
    log(f"Installing {backend.label} ({package})")
    _run_live(["apt-get", "update", "-qq"], "Updating package lists...", progress)
    _run_live(["apt-get", "install", "-y", package], f"Installing {package}...", progress)
    _run_live(["systemctl", "enable", "--now", backend.service], f"Starting {backend.service}...", progress)
    log(f"{backend.label} installed and started")


def stop_web_server(backend, progress=None):
    _run_live(["systemctl", "stop", backend.service], f"Stopping {backend.service}...", progress)
    _run_live(["systemctl", "disable", backend.service], f"Disabling {backend.service}...", progress)
    log(f"{backend.label} stopped and disabled")


def start_web_server(backend, progress=None):
    """Enables and starts `backend`, installing its package first when it is missing. Returns True if installed."""
    if not probe.is_installed(WEB_SERVER_PACKAGES[backend]):
        install_web_server(backend, progress)
        return True
    _run_live(["systemctl", "enable", "--now", backend.service], f"Starting {backend.service}...", progress)
    log(f"{backend.label} enabled and started")
    return False


def ensure_certbot(backend, progress=None):
    """Installs certbot and the plugin for `backend` unless certbot is already on PATH."""
    if utils.is_tool_installed("certbot"):
        return False
    packages = ["certbot"]
    if backend in CERTBOT_PLUGINS:
        packages.append(CERTBOT_PLUGINS[backend])
    log(f"Installing {' '.join(packages)}")
    _run_live(["apt-get", "update", "-qq"], "Updating package lists...", progress)
    _run_live(["apt-get", "install", "-y", *packages], "Installing certbot...", progress)
    return True

"""Read-only inspection of the host: web server, PHP, databases, OS, load."""
import platform
import re
import socket
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

import psutil

from domainhelper import utils
from domainhelper.config import Settings
from domainhelper.logger import log
from domainhelper.modules.registry import Backend

DATABASE_PACKAGES = {
    "MySQL": "mysql-server",
    "MariaDB": "mariadb-server",
    "PostgreSQL": "postgresql",
}

PHP_FPM_RE = re.compile(r"^php(\d+\.\d+)-fpm\s+install ok installed", re.MULTILINE)


@dataclass
class HostContext:
    """Everything a component needs to know about the host, passed explicitly."""
    settings: Settings
    web_server: Optional[Backend] = None
    php_versions: List[str] = field(default_factory=list)
    databases: List[str] = field(default_factory=list)
    os_name: str = "Unknown"


def service_is_active(service):
    return utils.run_command(["systemctl", "is-active", "--quiet", service]).returncode == 0


def detect_active_web_server():
    """
    Returns the Backend whose service is active, or None.
    Apache is checked first and wins if both report active.
    """
    apache = service_is_active(Backend.APACHE.service)
    nginx = service_is_active(Backend.NGINX.service)
    if apache and nginx:
        log("Both apache2 and nginx report active; treating Apache as the web server", "WARNING")
    if apache:
        return Backend.APACHE
    if nginx:
        return Backend.NGINX
    return None


def is_installed(package):
    """Package-database check; 'rc' (removed, config left) counts as not installed."""
    result = utils.run_command(["dpkg-query", "-W", "-f=${Status}", package])
    return result.returncode == 0 and "install ok installed" in result.stdout


def installed_php_versions():
    result = utils.run_command(["dpkg-query", "-W", "-f=${Package} ${Status}\n", "php*-fpm"])
    if result.returncode != 0:
        return []
    return sorted(set(PHP_FPM_RE.findall(result.stdout)))


def installed_databases():
    return [name for name, package in DATABASE_PACKAGES.items() if is_installed(package)]


def read_os_release(path="/etc/os-release"):
    try:
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if line.startswith("PRETTY_NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return platform.platform()


def probe_host(settings):
    return HostContext(
        settings=settings,
        web_server=detect_active_web_server(),
        php_versions=installed_php_versions(),
        databases=installed_databases(),
        os_name=read_os_release(),
    )


def system_overview():
    """Hostname, uptime, memory and load average for the menu header."""
    uptime_seconds = time.time() - psutil.boot_time()
    memory = psutil.virtual_memory()
    try:
        load = " ".join(f"{value:.2f}" for value in psutil.getloadavg())
    except (AttributeError, OSError):
        load = "N/A"
    return {
        "hostname": socket.gethostname(),
        "uptime": str(timedelta(seconds=int(uptime_seconds))),
        "memory": f"{utils.format_bytes(memory.used)} / {utils.format_bytes(memory.total)}",
        "memory_percent": memory.percent,
        "load": load,
    }

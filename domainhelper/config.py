import json
import os
from dataclasses import dataclass, fields, replace

from domainhelper.logger import log

CONFIG_FILE = os.environ.get("DOMAINHELPER_CONFIG", "/etc/domainhelper/config.json")

# Fields holding filesystem paths; Settings.rooted() prefixes these.
PATH_FIELDS = (
    "registry_file", "log_file", "lock_dir", "www_root",
    "nginx_sites_available", "nginx_sites_enabled",
    "apache_sites_available", "apache_sites_enabled",
    "letsencrypt_live", "renewal_log",
)


@dataclass
class Settings:
    registry_file: str = "/opt/domainhelper/config/domains.conf"
    log_file: str = "/opt/domainhelper/logs/domain.log"
    lock_dir: str = "/opt/domainhelper/run"
    www_root: str = "/var/www"
    nginx_sites_available: str = "/etc/nginx/sites-available"
    nginx_sites_enabled: str = "/etc/nginx/sites-enabled"
    apache_sites_available: str = "/etc/apache2/sites-available"
    apache_sites_enabled: str = "/etc/apache2/sites-enabled"
    letsencrypt_live: str = "/etc/letsencrypt/live"
    renewal_log: str = "/var/log/ssl-renewal.log"
    language: str = "en"
    email: str = ""
    expiry_warning_days: int = 30
    http_timeout: int = 10

    @classmethod
    def rooted(cls, root, **overrides):
        """Settings with every path moved under `root` (used for tests and staging trees)."""
        base = cls(**overrides)
        moved = {name: os.path.join(root, getattr(base, name).lstrip("/")) for name in PATH_FIELDS}
        return replace(base, **moved)

    def default_document_root(self, domain):
        return os.path.join(self.www_root, domain)

    def certificate_dir(self, domain):
        return os.path.join(self.letsencrypt_live, domain)


def load_settings(path=None):
    """
    Loads settings from a JSON file. A missing file means defaults; a broken
    one is logged and ignored. DOMAINHELPER_ROOT re-roots every path.
    """
    path = path or CONFIG_FILE
    values = {}
    known = {f.name for f in fields(Settings)}
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log(f"Could not read config {path}: {e}; using defaults", "WARNING")
            data = {}
        if not isinstance(data, dict):
            log(f"Config {path} is not a JSON object; using defaults", "WARNING")
            data = {}
        for key, value in data.items():
            if key in known:
                values[key] = value
            else:
                log(f"Ignoring unknown config key '{key}' in {path}", "WARNING")

    root = os.environ.get("DOMAINHELPER_ROOT")
    if root:
        return Settings.rooted(root, **values)
    return Settings(**values)

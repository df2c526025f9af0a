"""
Site configuration for Apache and Nginx: rendering, enabling, validating,
reloading and rolling back, plus best-effort import of existing sites.
"""
import os
import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from domainhelper import utils
from domainhelper.errors import (
    BackendMismatch, ConfigValidationFailed, FilesystemError, NoWebServer, ValidationError,
)
from domainhelper.logger import log
from domainhelper.modules.registry import (
    Backend, DomainRecord, SslState, validate_document_root, validate_domain,
)

DEFAULT_PHP_SOCKET = "/var/run/php/php-fpm.sock"

NGINX_SITE_BODY = """    server_name {domain} www.{domain};
    root {document_root};
    index index.html index.htm index.php;

    add_header X-Frame-Options DENY always;
    add_header X-Content-Type-Options nosniff always;
    add_header X-XSS-Protection "1; mode=block" always;
    add_header Referrer-Policy "strict-origin-when-cross-origin" always;

    location / {{
        try_files $uri $uri/ =404;
    }}

    location ~ \\.php$ {{
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:{php_socket};
    }}

    location ~* \\.(jpg|jpeg|png|gif|ico|css|js|pdf|txt|svg|woff|woff2|ttf|eot)$ {{
        expires 1M;
        add_header Cache-Control "public, immutable";
        access_log off;
    }}

    location ~ /\\. {{
        deny all;
        access_log off;
        log_not_found off;
    }}

    location ~* \\.(htaccess|htpasswd|ini|log|sh|inc|bak)$ {{
        deny all;
        access_log off;
        log_not_found off;
    }}

    access_log /var/log/nginx/{domain}-access.log;
    error_log /var/log/nginx/{domain}-error.log;
"""

NGINX_TEMPLATE = """# Managed by domainhelper
# Web-Root: {document_root}
server {{
    listen 80;
    listen [::]:80;
{body}}}
"""

NGINX_TLS_TEMPLATE = """# Managed by domainhelper
# Web-Root: {document_root}
server {{
    listen 80;
    listen [::]:80;
    server_name {domain} www.{domain};

    location /.well-known/acme-challenge/ {{
        root {document_root};
    }}

    location / {{
        return 301 https://$host$request_uri;
    }}
}}

server {{
    listen 443 ssl http2;
    listen [::]:443 ssl http2;

    ssl_certificate {fullchain_path};
    ssl_certificate_key {key_path};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers off;
    ssl_session_cache shared:SSL:10m;
    add_header Strict-Transport-Security "max-age=31536000" always;

{body}}}
"""

APACHE_SITE_BODY = """    ServerName {domain}
    ServerAlias www.{domain}
    DocumentRoot {document_root}

    <Directory {document_root}>
        Options -Indexes +FollowSymLinks
        AllowOverride All
        Require all granted

        Header always set X-Frame-Options DENY
        Header always set X-Content-Type-Options nosniff
        Header always set X-XSS-Protection "1; mode=block"
        Header always set Referrer-Policy "strict-origin-when-cross-origin"

        <IfModule mod_expires.c>
            ExpiresActive On
            ExpiresByType text/css "access plus 1 month"
            ExpiresByType application/javascript "access plus 1 month"
            ExpiresByType image/png "access plus 1 month"
            ExpiresByType image/jpeg "access plus 1 month"
            ExpiresByType image/gif "access plus 1 month"
            ExpiresByType image/x-icon "access plus 1 month"
        </IfModule>
    </Directory>

    ErrorLog ${{APACHE_LOG_DIR}}/{domain}-error.log
    CustomLog ${{APACHE_LOG_DIR}}/{domain}-access.log combined

    <FilesMatch "^\\.">
        Require all denied
    </FilesMatch>

    <FilesMatch "\\.(htaccess|htpasswd|ini|log|sh|inc|bak)$">
        Require all denied
    </FilesMatch>
"""

APACHE_TEMPLATE = """# Managed by domainhelper
# Web-Root: {document_root}
<VirtualHost *:80>
{body}</VirtualHost>
"""

APACHE_TLS_TEMPLATE = """# Managed by domainhelper
# Web-Root: {document_root}
<VirtualHost *:80>
    ServerName {domain}
    ServerAlias www.{domain}
    DocumentRoot {document_root}

    RewriteEngine On
    RewriteCond %{{REQUEST_URI}} !^/\\.well-known/acme-challenge/
    RewriteRule ^ https://%{{SERVER_NAME}}%{{REQUEST_URI}} [END,NE,R=permanent]
</VirtualHost>

<IfModule mod_ssl.c>
<VirtualHost *:443>
{body}
    SSLEngine on
    SSLCertificateFile {fullchain_path}
    SSLCertificateKeyFile {key_path}
    Header always set Strict-Transport-Security "max-age=31536000"
</VirtualHost>
</IfModule>
"""

PLACEHOLDER_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Welcome to {domain}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            color: white;
            min-height: 100vh;
            margin: 0;
            display: flex;
            align-items: center;
            justify-content: center;
        }}
        .container {{ text-align: center; max-width: 600px; padding: 2rem; }}
        .info-box {{ background: rgba(255, 255, 255, 0.1); border-radius: 10px; padding: 1.5rem; margin: 2rem 0; }}
        .footer {{ opacity: 0.7; font-size: 0.9rem; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Welcome to {domain}</h1>
        <p>Your website is now configured and ready to use!</p>
        <div class="info-box">
            <p>Upload your website files to <code>{document_root}</code> to replace this page.</p>
            <p>Web server: {backend}</p>
        </div>
        <div class="footer">Generated by domainhelper on {generated}</div>
    </div>
</body>
</html>
"""

# Config names shipped by the distro packages; never imported.
DEFAULT_SITE_FILES = {"default", "default.conf", "000-default.conf", "default-ssl.conf"}
BACKUP_SUFFIXES = (".bak", ".old", ".orig", ".save", ".swp", ".dpkg-dist", ".dpkg-old", ".dpkg-new", "~")

NGINX_BLOCK_RE = re.compile(r"^server\s*\{")
NGINX_NAME_RE = re.compile(r"^server_name\s+([^;]+);?")
NGINX_ROOT_RE = re.compile(r"^root\s+([^;]+);?")
NGINX_STATEMENT_SPLIT_RE = re.compile(r"[;{}]")
APACHE_BLOCK_RE = re.compile(r"^<VirtualHost\b", re.IGNORECASE)
APACHE_NAME_RE = re.compile(r"^ServerName\s+(\S+)", re.IGNORECASE)
APACHE_ROOT_RE = re.compile(r"^DocumentRoot\s+(.+)$", re.IGNORECASE)
TLS_RE = re.compile(r"^\s*(listen\s+(\[::\]:)?443\b|<VirtualHost\s+[^>]*:443>|SSLEngine\s+on)", re.IGNORECASE | re.MULTILINE)


@dataclass
class ParsedSite:
    server_names: List[str] = field(default_factory=list)
    roots: List[str] = field(default_factory=list)
    blocks: int = 0


@dataclass
class ImportCandidate:
    record: DomainRecord
    source: str
    confidence: str = "high"
    warnings: List[str] = field(default_factory=list)


@dataclass
class ImportScan:
    candidates: List[ImportCandidate] = field(default_factory=list)
    skipped: List[tuple] = field(default_factory=list)


def parse_site_config(text, backend):
    """
    Pulls server names and document roots out of a site file, in order of
    appearance. Comments are ignored; nothing is inferred when a directive is
    missing.
    """
    parsed = ParsedSite()
    if backend is Backend.NGINX:
        block_re, name_re, root_re = NGINX_BLOCK_RE, NGINX_NAME_RE, NGINX_ROOT_RE
    else:
        block_re, name_re, root_re = APACHE_BLOCK_RE, APACHE_NAME_RE, APACHE_ROOT_RE

    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        if block_re.match(line):
            parsed.blocks += 1
        # nginx allows several directives on one line: server { server_name a; root /x; }
        statements = NGINX_STATEMENT_SPLIT_RE.split(line) if backend is Backend.NGINX else [line]
        for statement in statements:
            statement = statement.strip()
            match = name_re.match(statement)
            if match:
                name = _first_usable_name(match.group(1).split(), backend)
                if name:
                    parsed.server_names.append(name)
                continue
            match = root_re.match(statement)
            if match:
                root = match.group(1).strip().strip('"\'')
                if root:
                    parsed.roots.append(os.path.normpath(root))
    return parsed


def _first_usable_name(tokens, backend):
    for token in tokens:
        if backend is Backend.APACHE:
            token = token.split(":", 1)[0]
        # "_" catch-all, wildcards and regex names are not domains we manage
        if token == "_" or token.startswith("~") or "*" in token:
            continue
        return token.lower()
    return None


def is_placeholder_site(filename, backend):
    if filename.startswith(".") or filename in DEFAULT_SITE_FILES or filename.endswith(BACKUP_SUFFIXES):
        return True
    if backend is Backend.APACHE and not filename.endswith(".conf"):
        return True
    return False


@contextmanager
def filesystem_errors(domain):
    """Re-raises OSError from site files, symlinks and document roots as FilesystemError."""
    try:
        yield
    except OSError as e:
        target = f": {e.filename}" if e.filename else ""
        log(f"Filesystem error for {domain}: {e}", "ERROR")
        raise FilesystemError(
            f"{e.strerror or e}{target}",
            domain=domain,
            suggestion="Check that the path exists, is a directory and is writable by root.",
        ) from e


class Provisioner:
    def __init__(self, ctx):
        self.ctx = ctx
        self.settings = ctx.settings
        self.lock_path = os.path.join(self.settings.lock_dir, "provision.lock")

    # --- paths and inspection ---

    def available_dir(self, backend):
        if backend is Backend.NGINX:
            return self.settings.nginx_sites_available
        return self.settings.apache_sites_available

    def enabled_dir(self, backend):
        if backend is Backend.NGINX:
            return self.settings.nginx_sites_enabled
        return self.settings.apache_sites_enabled

    def config_name(self, domain, backend):
        return domain if backend is Backend.NGINX else f"{domain}.conf"

    def config_path(self, domain, backend):
        return os.path.join(self.available_dir(backend), self.config_name(domain, backend))

    def enabled_path(self, domain, backend):
        return os.path.join(self.enabled_dir(backend), self.config_name(domain, backend))

    def config_exists(self, domain, backend):
        return os.path.exists(self.config_path(domain, backend))

    def site_state(self, domain, backend):
        if not self.config_exists(domain, backend):
            return "missing"
        return "enabled" if os.path.lexists(self.enabled_path(domain, backend)) else "disabled"

    def has_tls(self, domain, backend):
        try:
            with open(self.config_path(domain, backend), "r", encoding="utf-8") as f:
                return bool(TLS_RE.search(f.read()))
        except OSError:
            return False

    def php_socket(self):
        if self.ctx.php_versions:
            return f"/run/php/php{self.ctx.php_versions[-1]}-fpm.sock"
        return DEFAULT_PHP_SOCKET

    def render(self, domain, backend, document_root, certificate=None):
        values = {
            "domain": domain,
            "document_root": document_root,
            "php_socket": self.php_socket(),
        }
        if backend is Backend.NGINX:
            body = NGINX_SITE_BODY.format(**values)
            template = NGINX_TLS_TEMPLATE if certificate else NGINX_TEMPLATE
        else:
            body = APACHE_SITE_BODY.format(**values)
            template = APACHE_TLS_TEMPLATE if certificate else APACHE_TEMPLATE
        if certificate:
            values["fullchain_path"] = certificate.fullchain_path
            values["key_path"] = certificate.key_path
        return template.format(body=body, **values)

    # --- mutations ---

    def ensure_backend(self, backend):
        if self.ctx.web_server is None:
            raise NoWebServer("No web server is running",
                              suggestion="Install one with 'install-webserver apache|nginx'.")
        if backend != self.ctx.web_server:
            raise BackendMismatch(
                f"This site belongs to {backend.label}, but {self.ctx.web_server.label} is the active web server",
                suggestion=f"Start {backend.label} (and stop {self.ctx.web_server.label}) before changing this site.",
            )

    def create(self, domain, backend, document_root, certificate=None):
        """
        Creates the document root with a placeholder page, writes and enables
        the site, validates the whole server config and only then reloads.
        Any failure leaves the previous config (or none) in place.
        """
        self.ensure_backend(backend)
        content = self.render(domain, backend, document_root, certificate)
        created_root = None if os.path.isdir(document_root) else document_root
        placeholder = None
        with filesystem_errors(domain), utils.file_lock(self.lock_path):
            try:
                placeholder = self._prepare_document_root(domain, backend, document_root)
                self._apply(domain, backend, content, tls=certificate is not None)
            except BaseException:
                if created_root:
                    shutil.rmtree(created_root, ignore_errors=True)
                elif placeholder and os.path.exists(placeholder):
                    os.unlink(placeholder)
                raise
        self._set_ownership(document_root)
        log(f"{backend.label} site created for {domain} ({self.config_path(domain, backend)})")

    def install_tls(self, record, certificate):
        self.ensure_backend(record.backend)
        content = self.render(record.name, record.backend, record.document_root, certificate)
        with filesystem_errors(record.name), utils.file_lock(self.lock_path):
            self._apply(record.name, record.backend, content, tls=True)
        log(f"TLS configuration installed for {record.name}")

    def remove_tls(self, record):
        self.ensure_backend(record.backend)
        content = self.render(record.name, record.backend, record.document_root)
        with filesystem_errors(record.name), utils.file_lock(self.lock_path):
            self._apply(record.name, record.backend, content)
        log(f"TLS configuration removed for {record.name}")

    def remove(self, domain, backend):
        """Disables and deletes the site, then reloads. Returns False if there was nothing to remove."""
        self.ensure_backend(backend)
        path = self.config_path(domain, backend)
        with filesystem_errors(domain), utils.file_lock(self.lock_path):
            if not os.path.exists(path) and not os.path.lexists(self.enabled_path(domain, backend)):
                log(f"No {backend.label} site for {domain}; nothing to remove")
                return False
            self._disable(domain, backend)
            if os.path.exists(path):
                os.unlink(path)
            utils.run_checked(["systemctl", "reload", backend.service], domain=domain)
        log(f"{backend.label} site removed for {domain}")
        return True

    def reload(self, backend):
        with utils.file_lock(self.lock_path):
            self._validate(None, backend)
            utils.run_checked(["systemctl", "reload", backend.service])
        log(f"{backend.label} reloaded")

    def _apply(self, domain, backend, content, tls=False):
        path = self.config_path(domain, backend)
        previous = None
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                previous = f.read()
        was_enabled = os.path.lexists(self.enabled_path(domain, backend))
        try:
            utils.atomic_write(path, content)
            self._enable(domain, backend, tls)
            self._validate(domain, backend)
            utils.run_checked(["systemctl", "reload", backend.service], domain=domain)
        except BaseException as e:
            self._rollback(domain, backend, previous, was_enabled)
            log(f"Rolled back {backend.label} config for {domain}: {type(e).__name__}", "ERROR")
            raise

    def _enable(self, domain, backend, tls=False):
        if backend is Backend.NGINX:
            link = self.enabled_path(domain, backend)
            target = self.config_path(domain, backend)
            if os.path.lexists(link) and os.path.realpath(link) == os.path.realpath(target):
                return
            os.makedirs(self.enabled_dir(backend), exist_ok=True)
            if os.path.lexists(link):
                os.unlink(link)
            os.symlink(target, link)
        else:
            modules = ["headers", "expires"] + (["ssl", "rewrite"] if tls else [])
            utils.run_checked(["a2enmod", *modules], domain=domain)
            utils.run_checked(["a2ensite", self.config_name(domain, backend)], domain=domain)

    def _disable(self, domain, backend):
        if backend is Backend.APACHE:
            result = utils.run_command(["a2dissite", self.config_name(domain, backend)])
            if result.returncode != 0:
                log(f"a2dissite failed for {domain}: {result.stderr.strip()}", "WARNING")
        link = self.enabled_path(domain, backend)
        if os.path.lexists(link):
            os.unlink(link)

    def _validate(self, domain, backend):
        command = ["nginx", "-t"] if backend is Backend.NGINX else ["apache2ctl", "configtest"]
        result = utils.run_command(command)
        if result.returncode != 0:
            output = "\n".join(part for part in (result.stdout, result.stderr) if part)
            log(f"{backend.label} config test failed{f' for {domain}' if domain else ''}", "ERROR")
            raise ConfigValidationFailed(backend, output, domain=domain)

    def _rollback(self, domain, backend, previous, was_enabled):
        path = self.config_path(domain, backend)
        if previous is None:
            if os.path.exists(path):
                os.unlink(path)
        else:
            utils.atomic_write(path, previous)
        if not was_enabled:
            self._disable(domain, backend)

    def _prepare_document_root(self, domain, backend, document_root):
        """Returns the path of the placeholder page when one was written."""
        if not os.path.isdir(document_root):
            os.makedirs(document_root)
        existing = [name for name in os.listdir(document_root) if name.startswith("index.")]
        if existing:
            return None
        page = PLACEHOLDER_PAGE.format(
            domain=domain,
            document_root=document_root,
            backend=backend.label,
            generated=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        )
        path = os.path.join(document_root, "index.html")
        with open(path, "w", encoding="utf-8") as f:
            f.write(page)
        return path

    def _set_ownership(self, document_root):
        # Best-effort: www-data may not exist on minimal hosts.
        result = utils.run_command(["chown", "-R", "www-data:www-data", document_root])
        if result.returncode != 0:
            log(f"Could not chown {document_root} to www-data: {result.stderr.strip()}", "WARNING")

    # --- import of existing sites ---

    def scan_existing(self, registry, backend=None):
        """Reads site files not yet in the registry. Changes nothing."""
        backend = backend or self.ctx.web_server
        scan = ImportScan()
        if backend is None:
            return scan
        directory = self.available_dir(backend)
        try:
            filenames = sorted(os.listdir(directory))
        except FileNotFoundError:
            return scan
        known = {record.name for record in registry.list()}

        for filename in filenames:
            path = os.path.join(directory, filename)
            if not os.path.isfile(path) or is_placeholder_site(filename, backend):
                continue
            try:
                with open(path, "r", encoding="utf-8", errors="replace") as f:
                    parsed = parse_site_config(f.read(), backend)
            except OSError as e:
                scan.skipped.append((filename, f"unreadable: {e}"))
                continue
            candidate = self._candidate_from(parsed, filename, backend)
            if isinstance(candidate, str):
                scan.skipped.append((filename, candidate))
            elif candidate.record.name in known:
                continue
            else:
                scan.candidates.append(candidate)
        return scan

    def _candidate_from(self, parsed, filename, backend):
        if not parsed.server_names:
            return "no server name directive"
        name = parsed.server_names[0]
        try:
            name = validate_domain(name)
        except ValidationError as e:
            return e.message

        warnings = []
        confidence = "high"
        distinct_names = list(dict.fromkeys(parsed.server_names))
        if len(distinct_names) > 1:
            warnings.append(f"multiple server names ({', '.join(distinct_names)}); using the first")
            confidence = "low"
        if parsed.roots:
            root = parsed.roots[0]
            if len(set(parsed.roots)) > 1:
                warnings.append(f"multiple document roots ({', '.join(dict.fromkeys(parsed.roots))}); using the first")
                confidence = "low"
        else:
            root = self.settings.default_document_root(name)
            warnings.append(f"no document root directive; assuming {root}")
            confidence = "low"
        try:
            root = validate_document_root(root)
        except ValidationError as e:
            return e.message

        ssl_state = SslState.ACTIVE if os.path.isdir(self.settings.certificate_dir(name)) else SslState.NONE
        record = DomainRecord(name=name, backend=backend, document_root=root, ssl_state=ssl_state)
        return ImportCandidate(record=record, source=filename, confidence=confidence, warnings=warnings)

    def auto_import(self, registry, backend=None, apply=True):
        """Scans and (when `apply`) stores every candidate. Returns the ImportScan."""
        backend = backend or self.ctx.web_server
        scan = self.scan_existing(registry, backend)
        if apply and scan.candidates:
            self.ensure_backend(backend)
            for candidate in scan.candidates:
                registry.upsert(candidate.record)
                note = f" ({'; '.join(candidate.warnings)})" if candidate.warnings else ""
                log(f"Imported {candidate.record.name} from {candidate.source}{note}")
        return scan

"""
Domain registry: one line per managed domain in a flat colon-delimited file.

    name:backend:ssl_state:document_root:created|modified

The file is re-read on every call; writes go through a temp file and
os.replace under an flock, so readers never see a half-written store.
"""
import ipaddress
import os
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from domainhelper import utils
from domainhelper.errors import NotFound, RegistryError, ValidationError
from domainhelper.logger import log

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_DOMAIN_LENGTH = 255
DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
# Would end a directive in an nginx or Apache site config.
UNSAFE_PATH_CHARS = set(";{}\"'<>\\$")
HEADER = "# domainhelper registry: name:backend:ssl_state:document_root:created|modified\n"

# Values written by the old shell tool in the SSL column.
LEGACY_SSL = {"true": "active", "false": "none"}


class Backend(str, Enum):
    APACHE = "apache"
    NGINX = "nginx"

    @property
    def service(self):
        return "apache2" if self is Backend.APACHE else "nginx"

    @property
    def label(self):
        return "Apache" if self is Backend.APACHE else "Nginx"


class SslState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"


def now():
    return datetime.now().replace(microsecond=0)


def validate_domain(domain):
    """Returns the normalised (lower-case) domain or raises ValidationError."""
    name = (domain or "").strip().lower()
    hint = "Domain should be in format: example.com"
    if not name:
        raise ValidationError("Domain name cannot be empty", suggestion=hint)
    if len(name) > MAX_DOMAIN_LENGTH:
        raise ValidationError(f"Domain name too long ({len(name)} characters)", domain=name,
                              suggestion="Domain name must be 255 characters or less")
    if name == "localhost" or _is_ip(name):
        raise ValidationError(f"Invalid domain: {name}", domain=name,
                              suggestion="Please use a valid domain name, not localhost or an IP address")
    if not DOMAIN_RE.match(name):
        raise ValidationError(f"Invalid domain format: {name}", domain=name, suggestion=hint)
    return name


def validate_document_root(path):
    """
    Absolute path without whitespace, control characters or anything that
    would break a registry line or a server config directive.
    """
    if not path or not os.path.isabs(path):
        raise ValidationError(f"Document root must be an absolute path: {path!r}")
    if ":" in path:
        raise ValidationError(f"Document root cannot contain ':': {path}")
    bad = sorted({ch for ch in path if ch.isspace() or not ch.isprintable() or ch in UNSAFE_PATH_CHARS})
    if bad:
        raise ValidationError(f"Document root contains unsupported characters {''.join(bad)!r}: {path!r}",
                              suggestion="Use a path made of letters, digits, dots, dashes, underscores and slashes.")
    return os.path.normpath(path)


def _is_ip(value):
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


@dataclass
class DomainRecord:
    name: str
    backend: Backend
    document_root: str
    ssl_state: SslState = SslState.NONE
    created_at: datetime = field(default_factory=now)
    modified_at: datetime = field(default_factory=now)

    def touched(self, **changes):
        """Copy with `changes` applied and modified_at bumped."""
        return replace(self, modified_at=now(), **changes)

    def to_line(self):
        stamps = f"{self.created_at.strftime(TIME_FORMAT)}|{self.modified_at.strftime(TIME_FORMAT)}"
        return f"{self.name}:{self.backend.value}:{self.ssl_state.value}:{self.document_root}:{stamps}"

    @classmethod
    def from_line(cls, line):
        """Parses one registry line. Raises ValueError when it is malformed."""
        parts = line.strip().split(":", 4)
        if len(parts) != 5:
            raise ValueError(f"expected 5 fields, got {len(parts)}")
        name, backend, ssl_state, document_root, stamps = parts
        try:
            name = validate_domain(name)
        except ValidationError as e:
            raise ValueError(e.message)
        ssl_state = LEGACY_SSL.get(ssl_state.lower(), ssl_state.lower())
        if not os.path.isabs(document_root):
            raise ValueError(f"document root is not absolute: {document_root!r}")
        created, _, modified = stamps.partition("|")
        created_at = datetime.strptime(created.strip(), TIME_FORMAT)
        modified_at = datetime.strptime(modified.strip(), TIME_FORMAT) if modified else created_at
        return cls(
            name=name,
            backend=Backend(backend.lower()),
            document_root=document_root,
            ssl_state=SslState(ssl_state),
            created_at=created_at,
            modified_at=modified_at,
        )


class DomainRegistry:
    def __init__(self, path, lock_path=None):
        self.path = path
        self.lock_path = lock_path or f"{path}.lock"

    def _read_lines(self):
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return f.readlines()
        except (OSError, UnicodeDecodeError) as e:
            raise RegistryError(f"Cannot read domain registry {self.path}: {e}",
                                suggestion="Check the file's permissions and contents.")

    def list(self):
        """Yields every well-formed record; malformed lines are skipped with a warning."""
        for lineno, line in enumerate(self._read_lines(), start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            try:
                yield DomainRecord.from_line(stripped)
            except ValueError as e:
                log(f"Skipping malformed registry line {lineno} in {self.path}: {e}", "WARNING")

    def __iter__(self):
        return self.list()

    def find(self, name):
        name = name.strip().lower()
        found = None
        for record in self.list():
            if record.name == name:
                found = record
        return found

    def get(self, name):
        record = self.find(name)
        if record is None:
            raise NotFound(f"Domain {name} is not registered", domain=name,
                           suggestion="Use 'list' to see managed domains.")
        return record

    def exists(self, name):
        return self.find(name) is not None

    def upsert(self, record):
        """Replaces any record with the same name. Returns the stored record."""
        record = replace(record, name=validate_domain(record.name),
                         document_root=validate_document_root(record.document_root))
        with utils.file_lock(self.lock_path):
            lines = [line for line in self._read_lines() if _line_key(line) != record.name]
            if not lines:
                lines = [HEADER]
            if not lines[-1].endswith("\n"):
                lines[-1] += "\n"
            lines.append(record.to_line() + "\n")
            utils.atomic_write(self.path, "".join(lines))
        log(f"Registry: stored {record.name} ({record.backend.value}, ssl={record.ssl_state.value})")
        return record

    def remove(self, name):
        """Removes `name`; returns False (and writes nothing) when it was not there."""
        name = name.strip().lower()
        with utils.file_lock(self.lock_path):
            lines = self._read_lines()
            kept = [line for line in lines if _line_key(line) != name]
            if len(kept) == len(lines):
                return False
            utils.atomic_write(self.path, "".join(kept))
        log(f"Registry: removed {name}")
        return True


def _line_key(line):
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None
    return stripped.split(":", 1)[0].lower()

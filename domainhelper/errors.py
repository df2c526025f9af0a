"""Exceptions raised by the domain, vhost and certificate operations."""


class DomainHelperError(Exception):
    """Base exception for every operation error reported to the user."""

    def __init__(self, message, domain=None, suggestion=None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class ValidationError(DomainHelperError):
    """Bad input. Nothing was changed."""


class BackendMismatch(ValidationError):
    """The record belongs to a web server that is not the active one."""


class NoWebServer(ValidationError):
    """Neither Apache nor Nginx is running."""


class NotFound(DomainHelperError):
    """Domain or record is absent."""


class OperationCancelled(DomainHelperError):
    """The user declined to continue past a warning."""


class PrivilegeError(DomainHelperError):
    """The command needs root."""


class RegistryError(DomainHelperError):
    """The registry file cannot be read at all."""


class FilesystemError(DomainHelperError):
    """A site file, symlink or document root could not be written."""


class ExternalCommandFailed(DomainHelperError):
    """An external command exited non-zero."""

    TAIL_LINES = 10

    def __init__(self, command, returncode, output="", message=None, domain=None, suggestion=None):
        self.command = list(command)
        self.returncode = returncode
        self.output = output or ""
        if message is None:
            message = f"Command '{' '.join(self.command)}' failed with exit code {returncode}"
        super().__init__(message, domain=domain, suggestion=suggestion)

    @property
    def tail(self):
        lines = [line for line in self.output.splitlines() if line.strip()]
        return "\n".join(lines[-self.TAIL_LINES:])


class ConfigValidationFailed(DomainHelperError):
    """The generated site config did not pass the backend's own syntax check."""

    def __init__(self, backend, output="", domain=None):
        self.backend = backend
        self.output = output or ""
        super().__init__(
            f"{backend.label} rejected the generated configuration; nothing was reloaded",
            domain=domain,
            suggestion="Check the output above and the existing site configs for errors.",
        )

    @property
    def tail(self):
        lines = [line for line in self.output.splitlines() if line.strip()]
        return "\n".join(lines[-ExternalCommandFailed.TAIL_LINES:])


class IssuanceFailed(DomainHelperError):
    """Certificate issuance failed. `reason` says why when certbot told us."""

    SUGGESTIONS = {
        "dns_mismatch": "Make sure the domain's A record points to this server and DNS has propagated.",
        "port_blocked": "Open ports 80 and 443 in the firewall and make sure the web server answers on port 80.",
        "rate_limited": "Let's Encrypt rate limit reached; wait before retrying or use --staging for tests.",
        "unknown": "Check /var/log/letsencrypt/letsencrypt.log for details.",
    }

    def __init__(self, domain, reason, output=""):
        self.reason = reason
        self.output = output or ""
        super().__init__(
            f"Certificate issuance for {domain} failed ({reason.value})",
            domain=domain,
            suggestion=self.SUGGESTIONS.get(reason.value),
        )

    @property
    def tail(self):
        lines = [line for line in self.output.splitlines() if line.strip()]
        return "\n".join(lines[-ExternalCommandFailed.TAIL_LINES:])

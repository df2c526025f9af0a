"""Subcommand entry point. With no subcommand the interactive menu starts."""
import functools
from typing import Optional

import questionary
import typer

from domainhelper import __version__, display, menu
from domainhelper.config import load_settings
from domainhelper.errors import DomainHelperError, PrivilegeError, RegistryError, ValidationError
from domainhelper.logger import log, set_log_file
from domainhelper.modules import certificates, installer, network
from domainhelper.modules.domains import add_domain, remove_domain, switch_web_server
from domainhelper.modules.probe import system_overview
from domainhelper.modules.registry import Backend
from domainhelper.modules.status import check_domain_status
from domainhelper.session import open_session
from domainhelper.translations import load_language, t
from domainhelper.utils import console, is_root

app = typer.Typer(
    name="domainhelper",
    help="Domain and SSL certificate management for Apache and Nginx.",
    invoke_without_command=True,
    add_completion=False,
)


def handle_errors(func):
    """Turns operation errors into a red message, an ERROR log line and an exit code."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DomainHelperError as e:
            display.print_error(e)
            log(f"{func.__name__}: {e.message}", "ERROR")
            raise typer.Exit(code=2 if isinstance(e, RegistryError) else 1)
        except OSError as e:
            display.print_error(e)
            log(f"{func.__name__}: {e}", "ERROR")
            raise typer.Exit(code=1)
        except KeyboardInterrupt:
            console.print(f"\n[yellow]{t('interrupted', default='Interrupted.')}[/yellow]")
            log(f"{func.__name__}: interrupted by user", "WARNING")
            raise typer.Exit(code=130)
    return wrapper


def _session(ctx, mutating=False):
    if mutating and not is_root():
        raise PrivilegeError(t("error_need_root", default="This command must be run as root"),
                             suggestion="Re-run it with sudo.")
    return open_session(ctx.obj)


def _print_line(line):
    console.print(f"[dim]{line}[/dim]", highlight=False)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", help="Path to a JSON settings file."),
    lang: Optional[str] = typer.Option(None, "--lang", help="Interface language (en, ru)."),
    version: bool = typer.Option(False, "--version", help="Show the version and exit."),
):
    if version:
        console.print(f"domainhelper {__version__}")
        raise typer.Exit()
    settings = load_settings(config)
    set_log_file(settings.log_file)
    load_language(lang or settings.language)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        menu.main_menu(settings)


@app.command("add")
@handle_errors
def add_command(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to add, e.g. example.com"),
    root: Optional[str] = typer.Option(None, "--root", help="Document root (default: <www_root>/<domain>)."),
    force: bool = typer.Option(False, "--force", help="Re-provision an existing domain."),
    ssl: bool = typer.Option(False, "--ssl", help="Request a Let's Encrypt certificate afterwards."),
    email: Optional[str] = typer.Option(None, "--email", help="Contact email for Let's Encrypt."),
):
    """Add a domain with its virtual host."""
    session = _session(ctx, mutating=True)
    if ssl:
        certificates.validate_email(email or ctx.obj.email)
    record = add_domain(session.ctx, session.registry, session.provisioner, domain, document_root=root, force=force)
    console.print(f"[bold green]{t('domain_added', default='Domain {domain} added ({backend}).', domain=record.name, backend=record.backend.label)}[/bold green]")
    console.print(f"[cyan]{t('document_root_is', default='Document root: {root}', root=record.document_root)}[/cyan]")
    if ssl:
        installer.ensure_certbot(record.backend, progress=_print_line)
        record, certificate = session.certificates.issue(record.name, email or ctx.obj.email, progress=_print_line)
        console.print(f"[bold green]{t('ssl_installed', default='SSL certificate installed for {domain}, valid until {date}.', domain=record.name, date=certificate.not_after.strftime('%Y-%m-%d'))}[/bold green]")


@app.command("remove")
@handle_errors
def remove_command(
    ctx: typer.Context,
    domain: str = typer.Argument(...),
    purge_files: bool = typer.Option(False, "--purge-files", help="Also delete the document root."),
    keep_certificate: bool = typer.Option(False, "--keep-certificate", help="Keep the Let's Encrypt certificate."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Remove a domain and its virtual host."""
    session = _session(ctx, mutating=True)
    if not yes:
        question = t("confirm_remove_domain", default="Remove {domain}?", domain=domain)
        if not questionary.confirm(question, default=False).ask():
            console.print(f"[yellow]{t('operation_cancelled', default='Operation cancelled.')}[/yellow]")
            return
    record = remove_domain(session.ctx, session.registry, session.provisioner, domain,
                           purge_files=purge_files, delete_certificate=not keep_certificate)
    console.print(f"[bold green]{t('domain_removed', default='Domain {domain} removed.', domain=record.name)}[/bold green]")


@app.command("list")
@handle_errors
def list_command(
    ctx: typer.Context,
    check: bool = typer.Option(False, "--check", help="Also check the site state and HTTP response."),
):
    """List managed domains."""
    session = _session(ctx)
    rows = session.certificates.status_rows()
    if not rows:
        console.print(f"[yellow]{t('no_domains', default='No domains configured yet.')}[/yellow]")
        return
    checks = None
    if check:
        checks = {}
        with console.status(t("checking_domains", default="Checking domains...")):
            for row in rows:
                record = row.record
                checks[record.name] = (
                    session.provisioner.site_state(record.name, record.backend),
                    network.probe_http(f"http://{record.name}", timeout=ctx.obj.http_timeout),
                )
    console.print(display.domains_table(rows, checks))


@app.command("ssl-add")
@handle_errors
def ssl_add_command(
    ctx: typer.Context,
    domain: str = typer.Argument(...),
    email: Optional[str] = typer.Option(None, "--email", help="Contact email for Let's Encrypt."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Continue past pre-flight warnings."),
    www: Optional[bool] = typer.Option(None, "--www/--no-www", help="Include www.<domain> (default: when it resolves)."),
    staging: bool = typer.Option(False, "--staging", help="Use the Let's Encrypt staging environment."),
):
    """Request a certificate and switch the site to HTTPS."""
    session = _session(ctx, mutating=True)
    email = certificates.validate_email(email or ctx.obj.email)
    record = session.registry.get(domain)
    installer.ensure_certbot(record.backend, progress=_print_line)

    def confirm(message):
        console.print(f"[yellow]{message}[/yellow]")
        return bool(questionary.confirm(t("continue_anyway", default="Continue anyway?"), default=False).ask())

    record, certificate = session.certificates.issue(
        domain, email, confirm=None if yes else confirm, include_www=www, staging=staging, progress=_print_line,
    )
    console.print(f"[bold green]{t('ssl_installed', default='SSL certificate installed for {domain}, valid until {date}.', domain=record.name, date=certificate.not_after.strftime('%Y-%m-%d'))}[/bold green]")


@app.command("ssl-renew")
@handle_errors
def ssl_renew_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Test renewal without saving certificates."),
):
    """Renew all certificates and reload the affected web servers."""
    session = _session(ctx, mutating=True)
    report = session.certificates.renew_all(dry_run=dry_run, progress=_print_line)
    if not report.success:
        console.print(f"[bold red]{t('ssl_renew_failed', default='certbot renew reported errors; see the log.')}[/bold red]")
        raise typer.Exit(code=1)
    if report.renewed:
        console.print(f"[bold green]{t('ssl_renewed', default='Renewed: {domains}', domains=', '.join(report.renewed))}[/bold green]")
    else:
        console.print(f"[green]{t('ssl_nothing_renewed', default='No certificates were due for renewal.')}[/green]")


@app.command("ssl-remove")
@handle_errors
def ssl_remove_command(ctx: typer.Context, domain: str = typer.Argument(...)):
    """Switch a site back to HTTP and delete its certificate."""
    session = _session(ctx, mutating=True)
    record = session.certificates.remove(domain)
    console.print(f"[bold green]{t('ssl_removed', default='SSL removed for {domain}.', domain=record.name)}[/bold green]")


@app.command("ssl-status")
@handle_errors
def ssl_status_command(
    ctx: typer.Context,
    reconcile: bool = typer.Option(False, "--reconcile", help="Update stored SSL states from the certificates on disk."),
):
    """Show certificate state and expiry for every domain."""
    session = _session(ctx, mutating=reconcile)
    if reconcile:
        for name, old, new in session.certificates.reconcile():
            console.print(t("ssl_reconciled", default="{domain}: {old} -> {new}", domain=name, old=old.value, new=new.value))
    rows = session.certificates.status_rows()
    if not rows:
        console.print(f"[yellow]{t('no_domains', default='No domains configured yet.')}[/yellow]")
        return
    console.print(display.ssl_table(rows))


@app.command("ssl-autorenew")
@handle_errors
def ssl_autorenew_command(ctx: typer.Context):
    """Install the daily certificate renewal cron job."""
    _session(ctx, mutating=True)
    job = certificates.setup_autorenewal(ctx.obj)
    console.print(f"[bold green]{t('autorenew_installed', default='Automatic renewal scheduled: {schedule}', schedule=str(job.slices))}[/bold green]")


@app.command("status")
@handle_errors
def status_command(ctx: typer.Context, domain: str = typer.Argument(...)):
    """Check DNS, HTTP(S), certificate and files of one domain."""
    session = _session(ctx)
    with console.status(t("checking_domain", default="Checking {domain}...", domain=domain)):
        status = check_domain_status(session.ctx, session.registry, session.provisioner, domain)
    display.print_status(status)


@app.command("import")
@handle_errors
def import_command(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be imported."),
):
    """Import existing sites from sites-available into the registry."""
    session = _session(ctx, mutating=not dry_run)
    scan = session.provisioner.auto_import(session.registry, apply=not dry_run)
    for filename, reason in scan.skipped:
        console.print(f"[yellow]{t('import_skipped', default='Skipped {file}: {reason}', file=filename, reason=reason)}[/yellow]")
    if not scan.candidates:
        console.print(t("import_nothing", default="No new sites found."))
        return
    for candidate in scan.candidates:
        record = candidate.record
        style = "green" if candidate.confidence == "high" else "yellow"
        verb = t("import_would_import", default="Would import") if dry_run else t("import_imported", default="Imported")
        console.print(f"[{style}]{verb} {record.name} -> {record.document_root} ({candidate.source}, {candidate.confidence})[/{style}]")
        for warning in candidate.warnings:
            console.print(f"    [yellow]! {warning}[/yellow]")


@app.command("info")
@handle_errors
def info_command(ctx: typer.Context):
    """Show host information: OS, web server, PHP, databases, load."""
    session = _session(ctx)
    console.print(display.info_panel(session.ctx, system_overview()))


@app.command("install-webserver")
@handle_errors
def install_webserver_command(ctx: typer.Context, backend: str = typer.Argument(..., help="apache or nginx")):
    """Install and start Apache or Nginx."""
    session = _session(ctx, mutating=True)
    try:
        chosen = Backend(backend.lower())
    except ValueError:
        raise ValidationError(f"Unknown web server: {backend}", suggestion="Choose 'apache' or 'nginx'.")
    if session.ctx.web_server is not None:
        raise ValidationError(
            t("web_server_already_running", default="{server} is already running", server=session.ctx.web_server.label),
            suggestion="Only one web server is managed at a time.",
        )
    installer.install_web_server(chosen, progress=_print_line)
    console.print(f"[bold green]{t('web_server_installed', default='{server} installed and running.', server=chosen.label)}[/bold green]")


@app.command("switch-webserver")
@handle_errors
def switch_webserver_command(
    ctx: typer.Context,
    backend: str = typer.Argument(..., help="apache or nginx"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Stop the active web server, start the other one and move every domain to it."""
    session = _session(ctx, mutating=True)
    try:
        chosen = Backend(backend.lower())
    except ValueError:
        raise ValidationError(f"Unknown web server: {backend}", suggestion="Choose 'apache' or 'nginx'.")
    leftovers = [record for record in session.registry.list() if record.backend is not chosen]
    if session.ctx.web_server is chosen and not leftovers:
        console.print(f"[yellow]{t('web_server_already_active', default='{server} is already the active web server', server=chosen.label)}[/yellow]")
        return
    if not yes:
        question = t("confirm_switch_web_server", default="Switch to {server} and move every domain to it?", server=chosen.label)
        if not questionary.confirm(question, default=False).ask():
            console.print(f"[yellow]{t('operation_cancelled', default='Operation cancelled.')}[/yellow]")
            return
    report = switch_web_server(session.ctx, session.registry, chosen, progress=_print_line)
    display.print_switch_report(report)
    if report.failed:
        raise typer.Exit(code=1)


def main():
    app()


if __name__ == "__main__":
    main()

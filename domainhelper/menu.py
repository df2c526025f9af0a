import os

import questionary
from rich.columns import Columns
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from domainhelper import __version__, display
from domainhelper.errors import DomainHelperError, NoWebServer
from domainhelper.logger import log, tail
from domainhelper.modules import certificates, installer
from domainhelper.modules.domains import add_domain, remove_domain, switch_web_server
from domainhelper.modules.probe import system_overview
from domainhelper.modules.registry import Backend, SslState
from domainhelper.modules.status import check_domain_status
from domainhelper.session import open_session
from domainhelper.translations import choose_language, t
from domainhelper.utils import console, is_root, run_command

MENU_STYLE = questionary.Style([
    ('pointer', 'bold fg:yellow'),
    ('highlighted', 'bold fg:yellow'),
    ('selected', 'fg:white bg:blue'),
])


def _pause():
    questionary.press_any_key_to_continue(t('press_any_key', default='Press any key to continue...')).ask()


def _print_line(line):
    console.print(f"[dim]{line}[/dim]", highlight=False)


def _select(message, choices):
    return questionary.select(message, choices=choices, pointer="👉", style=MENU_STYLE).ask()


def run_action(action, settings):
    """Runs one menu action with a fresh session; errors are shown, never fatal."""
    try:
        action(open_session(settings))
    except DomainHelperError as e:
        display.print_error(e)
        log(f"menu: {e.message}", "ERROR")
    except OSError as e:
        display.print_error(e)
        log(f"menu: {e}", "ERROR")
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{t('operation_cancelled', default='Operation cancelled.')}[/yellow]")
        log("menu: interrupted by user", "WARNING")
    _pause()


def display_header(session):
    """Header with the app title and a short system state panel."""
    overview = system_overview()
    ctx = session.ctx

    info_table = Table(box=None, show_header=False, pad_edge=False, padding=(0, 1))
    info_table.add_column(style="bold magenta", no_wrap=True)
    info_table.add_column(style="cyan")
    info_table.add_row(f"{t('info_hostname', default='Hostname')}:", overview["hostname"])
    info_table.add_row(f"{t('info_os', default='OS')}:", ctx.os_name)
    info_table.add_row(f"{t('info_uptime', default='Uptime')}:", overview["uptime"])
    info_table.add_row(f"{t('info_memory', default='Memory')}:", overview["memory"])
    info_table.add_row(f"{t('info_load', default='Load average')}:", overview["load"])

    web = ctx.web_server.label if ctx.web_server else f"[red]{t('info_none', default='none')}[/red]"
    domains = list(session.registry.list())
    with_ssl = sum(1 for record in domains if record.ssl_state == SslState.ACTIVE)
    state_table = Table(box=None, show_header=False, pad_edge=False, padding=(0, 1))
    state_table.add_column(style="bold magenta", no_wrap=True)
    state_table.add_column(style="cyan")
    state_table.add_row(f"{t('info_web_server', default='Web server')}:", web)
    state_table.add_row(f"{t('info_domains', default='Domains')}:", str(len(domains)))
    state_table.add_row(f"{t('info_with_ssl', default='With SSL')}:", str(with_ssl))

    console.print(Panel(f"[bold bright_cyan]Domain Helper v{__version__}[/bold bright_cyan]",
                        title=f"[bold blue]{t('main_menu_title', default='Domain & SSL Manager')}[/bold blue]",
                        border_style="bold magenta"))
    console.print(Columns([
        Panel(info_table, title=f"[bold]{t('system_state_title', default='System State')}[/bold]", border_style="green"),
        Panel(state_table, title=f"[bold]{t('sites_state_title', default='Sites')}[/bold]", border_style="cyan"),
    ], equal=True))


def _choose_domain(session, message, predicate=None):
    names = [r.name for r in session.registry.list() if predicate is None or predicate(r)]
    if not names:
        console.print(f"[yellow]{t('no_domains', default='No domains configured yet.')}[/yellow]")
        return None
    return _select(message, names + [t('back', default='Back')])


def _is_back(choice):
    return choice is None or choice == t('back', default='Back')


def _ask_email(settings):
    return questionary.text(t('ask_email', default='Email for Let\'s Encrypt notifications:'),
                            default=settings.email).ask()


def _issue_ssl(session, domain, email):
    record = session.registry.get(domain)
    installer.ensure_certbot(record.backend, progress=_print_line)

    def confirm(message):
        console.print(f"[yellow]{message}[/yellow]")
        return bool(questionary.confirm(t('continue_anyway', default='Continue anyway?'), default=False).ask())

    record, certificate = session.certificates.issue(domain, email, confirm=confirm, progress=_print_line)
    console.print(f"[bold green]{t('ssl_installed', default='SSL certificate installed for {domain}, valid until {date}.', domain=record.name, date=certificate.not_after.strftime('%Y-%m-%d'))}[/bold green]")


def add_domain_flow(session):
    settings = session.ctx.settings
    if session.ctx.web_server is None:
        raise NoWebServer("No web server is running",
                          suggestion=t('hint_install_web_server', default="Use 'Install web server' from the main menu."))
    domain = questionary.text(t('ask_domain', default='Domain name (e.g. example.com):')).ask()
    if not domain:
        return
    domain = domain.strip().lower()
    root = questionary.text(t('ask_document_root', default='Document root:'),
                            default=settings.default_document_root(domain)).ask()
    if root is None:
        return
    force = False
    if session.registry.exists(domain) or session.provisioner.config_exists(domain, session.ctx.web_server):
        force = questionary.confirm(t('ask_force', default='{domain} already exists. Re-provision it?', domain=domain),
                                    default=False).ask()
        if not force:
            return
    record = add_domain(session.ctx, session.registry, session.provisioner, domain, document_root=root, force=force)
    console.print(f"[bold green]{t('domain_added', default='Domain {domain} added ({backend}).', domain=record.name, backend=record.backend.label)}[/bold green]")
    if record.ssl_state != SslState.ACTIVE and questionary.confirm(t('ask_ssl_now', default='Request an SSL certificate now?'), default=False).ask():
        email = _ask_email(settings)
        if email:
            _issue_ssl(session, record.name, email)


def remove_domain_flow(session):
    domain = _choose_domain(session, t('select_domain_remove', default='Select a domain to remove:'))
    if _is_back(domain):
        return
    if not questionary.confirm(t('confirm_remove_domain', default='Remove {domain}?', domain=domain), default=False).ask():
        return
    purge = questionary.confirm(t('ask_purge_files', default='Also delete the website files?'), default=False).ask()
    remove_domain(session.ctx, session.registry, session.provisioner, domain, purge_files=bool(purge))
    console.print(f"[bold green]{t('domain_removed', default='Domain {domain} removed.', domain=domain)}[/bold green]")


def list_domains_flow(session):
    rows = session.certificates.status_rows()
    if not rows:
        console.print(f"[yellow]{t('no_domains', default='No domains configured yet.')}[/yellow]")
        return
    console.print(display.domains_table(rows))


def status_flow(session):
    domain = _choose_domain(session, t('select_domain_status', default='Select a domain to check:'))
    if _is_back(domain):
        return
    with console.status(t('checking_domain', default='Checking {domain}...', domain=domain)):
        status = check_domain_status(session.ctx, session.registry, session.provisioner, domain)
    display.print_status(status)


def import_flow(session):
    scan = session.provisioner.scan_existing(session.registry)
    for filename, reason in scan.skipped:
        console.print(f"[yellow]{t('import_skipped', default='Skipped {file}: {reason}', file=filename, reason=reason)}[/yellow]")
    if not scan.candidates:
        console.print(t('import_nothing', default='No new sites found.'))
        return
    for candidate in scan.candidates:
        record = candidate.record
        console.print(f"  {record.name} -> {record.document_root} ({candidate.source}, {candidate.confidence})")
        for warning in candidate.warnings:
            console.print(f"    [yellow]! {warning}[/yellow]")
    if questionary.confirm(t('ask_import', default='Import these sites?'), default=True).ask():
        scan = session.provisioner.auto_import(session.registry)
        console.print(f"[bold green]{t('import_done', default='Imported {count} site(s).', count=len(scan.candidates))}[/bold green]")


# --- SSL submenu ---

def ssl_add_flow(session):
    domain = _choose_domain(session, t('select_domain_ssl', default='Select a domain:'),
                            lambda r: r.ssl_state != SslState.ACTIVE)
    if _is_back(domain):
        return
    email = _ask_email(session.ctx.settings)
    if email:
        _issue_ssl(session, domain, email)


def ssl_renew_flow(session):
    dry_run = questionary.confirm(t('ask_dry_run', default='Dry run only?'), default=False).ask()
    report = session.certificates.renew_all(dry_run=bool(dry_run), progress=_print_line)
    if not report.success:
        console.print(f"[bold red]{t('ssl_renew_failed', default='certbot renew reported errors; see the log.')}[/bold red]")
    elif report.renewed:
        console.print(f"[bold green]{t('ssl_renewed', default='Renewed: {domains}', domains=', '.join(report.renewed))}[/bold green]")
    else:
        console.print(f"[green]{t('ssl_nothing_renewed', default='No certificates were due for renewal.')}[/green]")


def ssl_remove_flow(session):
    domain = _choose_domain(session, t('select_domain_ssl_remove', default='Remove SSL from:'),
                            lambda r: r.ssl_state != SslState.NONE)
    if _is_back(domain):
        return
    if questionary.confirm(t('confirm_remove_ssl', default='Remove the certificate of {domain}?', domain=domain), default=False).ask():
        session.certificates.remove(domain)
        console.print(f"[bold green]{t('ssl_removed', default='SSL removed for {domain}.', domain=domain)}[/bold green]")


def ssl_status_flow(session):
    for name, old, new in session.certificates.reconcile():
        console.print(t('ssl_reconciled', default='{domain}: {old} -> {new}', domain=name, old=old.value, new=new.value))
    rows = session.certificates.status_rows()
    if not rows:
        console.print(f"[yellow]{t('no_domains', default='No domains configured yet.')}[/yellow]")
        return
    console.print(display.ssl_table(rows))


def ssl_autorenew_flow(session):
    job = certificates.setup_autorenewal(session.ctx.settings)
    console.print(f"[bold green]{t('autorenew_installed', default='Automatic renewal scheduled: {schedule}', schedule=str(job.slices))}[/bold green]")


def ssl_menu(settings):
    menu_options = {
        t('menu_ssl_add', default='Install SSL certificate'): ssl_add_flow,
        t('menu_ssl_renew', default='Renew certificates'): ssl_renew_flow,
        t('menu_ssl_remove', default='Remove SSL certificate'): ssl_remove_flow,
        t('menu_ssl_status', default='Certificate status'): ssl_status_flow,
        t('menu_ssl_autorenew', default='Set up automatic renewal'): ssl_autorenew_flow,
        t('back', default='Back'): "exit",
    }
    while True:
        console.clear()
        console.print(f"[bold blue underline]{t('ssl_menu_title', default='SSL Certificates')}[/bold blue underline]\n")
        action = _select(t('menu_prompt', default='Choose an action:'), list(menu_options.keys()))
        if action is None or menu_options.get(action) == "exit":
            break
        run_action(menu_options[action], settings)


# --- System tools ---

def server_info_flow(session):
    console.print(display.info_panel(session.ctx, system_overview()))


def recent_logs_flow(session):
    lines = tail(30)
    if not lines:
        console.print(f"[yellow]{t('log_empty', default='The log is empty.')}[/yellow]")
        return
    console.print(Panel(Text("\n".join(lines)), title=session.ctx.settings.log_file, border_style="blue"))


def restart_web_server_flow(session):
    backend = session.ctx.web_server
    if backend is None:
        raise NoWebServer("No web server is running")
    result = run_command(["systemctl", "restart", backend.service])
    if result.returncode == 0:
        console.print(f"[bold green]{t('web_server_restarted', default='{server} restarted.', server=backend.label)}[/bold green]")
        log(f"{backend.label} restarted from the menu")
    else:
        console.print(f"[bold red]{result.stderr.strip() or result.stdout.strip()}[/bold red]")
        log(f"{backend.label} restart failed: {result.stderr.strip()}", "ERROR")


def web_server_status_flow(session):
    backend = session.ctx.web_server
    if backend is None:
        raise NoWebServer("No web server is running")
    result = run_command(["systemctl", "status", backend.service, "--no-pager", "-l"])
    console.print(Panel(result.stdout.strip() or result.stderr.strip(), title=backend.service, border_style="cyan"))


def switch_web_server_flow(session):
    choice = _select(t('select_switch_target', default='Switch to which web server?'),
                     [Backend.NGINX.label, Backend.APACHE.label, t('back', default='Back')])
    if _is_back(choice):
        return
    target = Backend.NGINX if choice == Backend.NGINX.label else Backend.APACHE
    leftovers = [record for record in session.registry.list() if record.backend is not target]
    if session.ctx.web_server is target and not leftovers:
        console.print(t('web_server_already_active', default='{server} is already the active web server', server=target.label))
        return
    question = t('confirm_switch_web_server', default='Switch to {server} and move every domain to it?', server=target.label)
    if not questionary.confirm(question, default=False).ask():
        return
    report = switch_web_server(session.ctx, session.registry, target, progress=_print_line)
    display.print_switch_report(report)


def system_tools_menu(settings):
    menu_options = {
        t('menu_server_info', default='Server information'): server_info_flow,
        t('menu_recent_logs', default='Recent log entries'): recent_logs_flow,
        t('menu_restart_web_server', default='Restart web server'): restart_web_server_flow,
        t('menu_web_server_status', default='Web server status'): web_server_status_flow,
        t('menu_switch_web_server', default='Switch web server'): switch_web_server_flow,
        t('back', default='Back'): "exit",
    }
    while True:
        console.clear()
        console.print(f"[bold blue underline]{t('system_tools_title', default='System Tools')}[/bold blue underline]\n")
        action = _select(t('menu_prompt', default='Choose an action:'), list(menu_options.keys()))
        if action is None or menu_options.get(action) == "exit":
            break
        run_action(menu_options[action], settings)


def install_web_server_flow(session):
    if session.ctx.web_server is not None:
        console.print(t('web_server_already_running', default='{server} is already running', server=session.ctx.web_server.label))
        return
    choice = _select(t('select_web_server', default='Which web server should be installed?'),
                     [Backend.NGINX.label, Backend.APACHE.label, t('back', default='Back')])
    if _is_back(choice):
        return
    backend = Backend.NGINX if choice == Backend.NGINX.label else Backend.APACHE
    installer.install_web_server(backend, progress=_print_line)
    console.print(f"[bold green]{t('web_server_installed', default='{server} installed and running.', server=backend.label)}[/bold green]")


def main_menu(settings):
    """Interactive loop. Every action re-probes the host so the menu never shows stale state."""
    if not is_root():
        console.print(Panel(t('warning_not_root', default='Not running as root: changes to sites and certificates will fail.'),
                            border_style="yellow"))
        _pause()

    while True:
        os.system('cls' if os.name == 'nt' else 'clear')
        try:
            session = open_session(settings)
            display_header(session)
        except DomainHelperError as e:
            display.print_error(e)
            log(f"menu: {e.message}", "ERROR")
            break

        menu_options = {
            t('menu_add_domain', default='Add domain'): lambda: run_action(add_domain_flow, settings),
            t('menu_remove_domain', default='Remove domain'): lambda: run_action(remove_domain_flow, settings),
            t('menu_list_domains', default='List domains'): lambda: run_action(list_domains_flow, settings),
            t('menu_ssl', default='SSL certificates'): lambda: ssl_menu(settings),
            t('menu_domain_status', default='Check domain status'): lambda: run_action(status_flow, settings),
            t('menu_import', default='Import existing sites'): lambda: run_action(import_flow, settings),
            t('menu_system_tools', default='System tools'): lambda: system_tools_menu(settings),
        }
        if session.ctx.web_server is None:
            menu_options[t('menu_install_web_server', default='Install web server')] = \
                lambda: run_action(install_web_server_flow, settings)
        menu_options[t('menu_language', default='Language / Язык')] = choose_language
        menu_options[t('menu_exit', default='Exit')] = "exit"

        action = _select(t('main_menu_prompt', default='What would you like to do?'), list(menu_options.keys()))
        if action is None or menu_options.get(action) == "exit":
            break
        console.clear()
        menu_options[action]()

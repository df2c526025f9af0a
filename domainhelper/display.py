"""Rich renderings shared by the CLI and the interactive menu."""
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from domainhelper.errors import DomainHelperError
from domainhelper.translations import t
from domainhelper.utils import console

SSL_LABEL_STYLES = {
    "valid": "green",
    "expiring": "yellow",
    "expired": "red",
    "missing": "red",
    "none": "dim",
}


def ssl_label(row):
    style = SSL_LABEL_STYLES.get(row.label, "white")
    text = t(f"ssl_label_{row.label}", default=row.label)
    if row.days_left is not None and row.label in ("valid", "expiring"):
        text = t("ssl_label_days", default="{label} ({days}d)", label=text, days=row.days_left)
    return f"[{style}]{text}[/{style}]"


def print_error(error):
    """Prints a DomainHelperError in red with its suggestion and the tail of any command output."""
    message = error.message if isinstance(error, DomainHelperError) else str(error)
    console.print(f"[bold red]{t('error_prefix', default='Error')}: {escape(message)}[/bold red]")
    suggestion = getattr(error, "suggestion", None)
    if suggestion:
        console.print(f"[yellow]{t('suggestion_prefix', default='Suggestion')}: {escape(suggestion)}[/yellow]")
    tail = getattr(error, "tail", "")
    if tail:
        console.print(Panel(Text(tail), title=t("command_output_title", default="Last output lines"), border_style="red"))


def domains_table(rows, checks=None):
    table = Table(title=t("domains_table_title", default="Managed Domains"), show_lines=False)
    table.add_column(t("col_domain", default="Domain"), style="cyan", no_wrap=True)
    table.add_column(t("col_web_server", default="Web Server"), style="magenta")
    table.add_column(t("col_ssl", default="SSL"))
    table.add_column(t("col_document_root", default="Document Root"), style="dim")
    table.add_column(t("col_created", default="Created"), style="dim")
    if checks is not None:
        table.add_column(t("col_site", default="Site"))
        table.add_column(t("col_http", default="HTTP"))

    for row in rows:
        record = row.record
        cells = [
            record.name,
            record.backend.label,
            ssl_label(row),
            record.document_root,
            record.created_at.strftime("%Y-%m-%d %H:%M"),
        ]
        if checks is not None:
            site_state, http_status = checks.get(record.name, ("?", None))
            cells.append(t(f"site_state_{site_state}", default=site_state))
            cells.append(str(http_status) if http_status is not None else "[red]-[/red]")
        table.add_row(*cells)
    return table


def ssl_table(rows):
    table = Table(title=t("ssl_table_title", default="SSL Certificates"))
    table.add_column(t("col_domain", default="Domain"), style="cyan", no_wrap=True)
    table.add_column(t("col_state", default="State"))
    table.add_column(t("col_status", default="Status"))
    table.add_column(t("col_expires", default="Expires"))
    table.add_column(t("col_issuer", default="Issuer"), style="dim")
    for row in rows:
        certificate = row.certificate
        table.add_row(
            row.record.name,
            row.record.ssl_state.value,
            ssl_label(row),
            certificate.not_after.strftime("%Y-%m-%d") if certificate else "-",
            certificate.issuer if certificate else "-",
        )
    return table


def _yes_no(value):
    return f"[green]{t('yes', default='yes')}[/green]" if value else f"[red]{t('no', default='no')}[/red]"


def print_status(status):
    record = status.record
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row(t("status_web_server", default="Web server"), record.backend.label)
    table.add_row(t("status_document_root", default="Document root"), record.document_root)
    table.add_row(t("status_dns", default="DNS A record"), status.dns_ip or "[red]-[/red]")
    table.add_row(t("status_www_dns", default="DNS A record (www)"), status.www_dns_ip or "[yellow]-[/yellow]")
    table.add_row(t("status_server_ip", default="Server IP"), status.server_ip or "[yellow]?[/yellow]")
    table.add_row(t("status_dns_match", default="DNS points here"), _yes_no(status.dns_matches))
    table.add_row("HTTP", str(status.http_status) if status.http_status is not None else "[red]-[/red]")
    table.add_row("HTTPS", str(status.https_status) if status.https_status is not None else "[red]-[/red]")
    if status.certificate:
        days = status.days_left
        style = "green" if days >= status.expiry_warning_days else ("yellow" if days > 0 else "red")
        table.add_row(t("status_certificate", default="Certificate"),
                      f"[{style}]{t('status_days_left', default='{days} days left', days=days)}[/{style}]")
    else:
        table.add_row(t("status_certificate", default="Certificate"), f"[dim]{t('ssl_label_none', default='none')}[/dim]")
    table.add_row(t("status_site", default="Virtual host"), t(f"site_state_{status.site_state}", default=status.site_state))
    table.add_row(t("status_root_exists", default="Document root exists"), _yes_no(status.root_exists))
    table.add_row(t("status_file_count", default="Files"), str(status.file_count))

    tips = status.recommendations()
    panel = Panel.fit(table, title=t("status_title", default="Status of {domain}", domain=record.name),
                      border_style="blue")
    console.print(panel)
    if tips:
        console.print(f"\n[bold yellow]{t('status_recommendations', default='Recommendations')}:[/bold yellow]")
        for tip in tips:
            console.print(f"  • {tip}")
    else:
        console.print(f"\n[bold green]{t('status_all_good', default='Everything looks good.')}[/bold green]")


def info_panel(ctx, overview):
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row(t("info_os", default="OS"), ctx.os_name)
    table.add_row(t("info_hostname", default="Hostname"), overview["hostname"])
    table.add_row(t("info_uptime", default="Uptime"), overview["uptime"])
    table.add_row(t("info_memory", default="Memory"), f"{overview['memory']} ({overview['memory_percent']}%)")
    table.add_row(t("info_load", default="Load average"), overview["load"])
    web = ctx.web_server.label if ctx.web_server else f"[red]{t('info_none', default='none')}[/red]"
    table.add_row(t("info_web_server", default="Web server"), web)
    table.add_row("PHP-FPM", ", ".join(ctx.php_versions) or t("info_none", default="none"))
    table.add_row(t("info_databases", default="Databases"), ", ".join(ctx.databases) or t("info_none", default="none"))
    return Panel.fit(table, title=t("info_title", default="Server Information"), border_style="cyan")


def print_switch_report(report):
    previous = report.previous.label if report.previous else t('info_none', default='none')
    console.print(f"[bold green]{t('web_server_switched', default='Switched from {old} to {new}.', old=previous, new=report.target.label)}[/bold green]")
    if report.installed:
        console.print(f"[cyan]{t('web_server_installed', default='{server} installed and running.', server=report.target.label)}[/cyan]")
    for name in report.migrated:
        console.print(f"  [green]✓[/green] {name}")
    for name, reason in report.failed:
        console.print(f"  [red]✗ {name}: {escape(reason)}[/red]")
    if report.failed:
        console.print(f"[yellow]{t('switch_failed_hint', default='Domains that failed still belong to the old web server; fix the errors above and run switch-webserver again.')}[/yellow]")

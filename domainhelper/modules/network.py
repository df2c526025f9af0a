"""DNS and HTTP probes used by the SSL pre-flight and the status check."""
import socket

import requests

from domainhelper.logger import log

PUBLIC_IP_SERVICES = (
    "https://ipinfo.io/ip",
    "https://icanhazip.com",
    "https://ipecho.net/plain",
)


def lookup_a_record(domain):
    """First IPv4 address the resolver returns for `domain`, or None."""
    try:
        infos = socket.getaddrinfo(domain, None, socket.AF_INET, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return None
    return infos[0][4][0] if infos else None


def probe_http(url, timeout=10):
    """Status code of a GET to `url` without following redirects, or None if unreachable."""
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
    except requests.RequestException:
        return None
    return response.status_code


def get_server_ip(timeout=5):
    for url in PUBLIC_IP_SERVICES:
        try:
            response = requests.get(url, timeout=timeout)
        except requests.RequestException:
            continue
        if response.status_code == 200 and response.text.strip():
            return response.text.strip()
    log("Could not determine the public IP of this server", "WARNING")
    return None

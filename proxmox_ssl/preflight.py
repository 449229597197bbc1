"""Read-only host checks to run before ``proxmox-ssl-setup``."""

import logging
import os
import shutil
import socket
from dataclasses import dataclass

import httpx
from rich.table import Table

from .client import run_command
from .models import TargetKind
from .verify import describe_certificate

CLOUDFLARE_VERIFY_URL = "https://api.cloudflare.com/client/v4/user/tokens/verify"

PASS = "pass"
WARN = "warn"
FAIL = "fail"

logger = logging.getLogger("Preflight")


@dataclass
class CheckResult:
    name: str
    status: str
    detail: str = ""


def detect_installation(which=shutil.which, runner=run_command):
    if which("pveversion"):
        proc = runner(["pveversion"])
        return TargetKind.VE, (proc.stdout or "").strip()
    if which("proxmox-backup-manager"):
        proc = runner(["proxmox-backup-manager", "versions"])
        lines = (proc.stdout or "").strip().splitlines()
        return TargetKind.PBS, lines[0] if lines else ""
    return None, ""


def check_root():
    if os.geteuid() == 0:
        return CheckResult("root", PASS, "running as root")
    return CheckResult("root", FAIL, "this check must be run as root")


def check_certbot(which=shutil.which, runner=run_command):
    if not which("certbot"):
        return [CheckResult("certbot", WARN, "certbot is not installed (only needed for --method certbot)")]
    version = runner(["certbot", "--version"])
    results = [CheckResult("certbot", PASS, (version.stdout or version.stderr).strip())]
    plugins = runner(["certbot", "plugins"])
    if "dns-cloudflare" in (plugins.stdout or ""):
        results.append(CheckResult("certbot dns-cloudflare", PASS, "plugin is available"))
    else:
        results.append(CheckResult("certbot dns-cloudflare", WARN, "plugin is not available"))
    return results


def check_cloudflare_token(token, transport=None):
    if not token:
        return CheckResult("cloudflare token", WARN, "CF_TOKEN not set, skipping")
    try:
        with httpx.Client(timeout=15.0, transport=transport) as client:
            resp = client.get(
                CLOUDFLARE_VERIFY_URL,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        body = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        return CheckResult("cloudflare token", FAIL, f"verification request failed: {e}")
    if body.get("success"):
        status = (body.get("result") or {}).get("status", "active")
        return CheckResult("cloudflare token", PASS, f"token is valid ({status})")
    messages = "; ".join(e.get("message", "") for e in body.get("errors") or [])
    return CheckResult("cloudflare token", FAIL, messages or f"HTTP {resp.status_code}")


def check_domain(domain, resolver=socket.getaddrinfo):
    if not domain:
        return CheckResult("domain", WARN, "DOMAIN not set, skipping")
    try:
        addresses = sorted({info[4][0] for info in resolver(domain, None)})
    except socket.gaierror:
        return CheckResult("domain", WARN, f"{domain} does not resolve")
    return CheckResult("domain", PASS, f"{domain} resolves to {', '.join(addresses)}")


def check_services(kind, runner=run_command):
    results = []
    for service in kind.services:
        proc = runner(["systemctl", "is-active", "--quiet", service])
        if proc.returncode == 0:
            results.append(CheckResult(service, PASS, "service is running"))
        else:
            results.append(CheckResult(service, WARN, "service is not running"))
    return results


def check_current_certificate(kind, cert_path=None, fallback_path=None):
    """Describe the certificate the proxy serves.

    A VE node without a custom certificate serves its self-signed
    ``pve-ssl.pem``, which is reported instead.
    """
    path = cert_path or kind.cert_path
    fallback = fallback_path or kind.fallback_cert_path
    name = "current certificate"
    if not os.path.exists(path):
        if not fallback or not os.path.exists(fallback):
            return CheckResult(name, WARN, f"{path} not found")
        path = fallback
    try:
        with open(path, "rb") as fh:
            details = describe_certificate(fh.read())
    except (OSError, ValueError) as e:
        return CheckResult(name, WARN, f"cannot read {path}: {e}")
    return CheckResult(
        name,
        PASS,
        f"{details['subject']}, valid {details['not_before']:%Y-%m-%d} to {details['not_after']:%Y-%m-%d}",
    )


def run_checks(domain=None, token=None, kind=None):
    """Run every check and return the list of CheckResult.

    The Proxmox product is detected from the installed tools unless given.
    """
    results = [check_root()]
    detected, version = detect_installation()
    if detected is None and kind is None:
        results.append(CheckResult("proxmox", FAIL, "no Proxmox installation detected"))
    else:
        if detected is not None:
            results.append(CheckResult("proxmox", PASS, f"{detected.label} detected {version}".strip()))
        kind = kind or detected
    results.extend(check_certbot())
    results.append(check_cloudflare_token(token))
    results.append(check_domain(domain))
    if kind is not None:
        results.extend(check_services(kind))
        results.append(check_current_certificate(kind))
    for r in results:
        logger.debug(f"{r.name}: {r.status} {r.detail}")
    return results


def render(results):
    styles = {PASS: "green", WARN: "yellow", FAIL: "bold red"}
    table = Table(title="Proxmox SSL setup checks")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Detail")
    for r in results:
        table.add_row(r.name, f"[{styles[r.status]}]{r.status.upper()}[/]", r.detail)
    return table

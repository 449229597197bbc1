import argparse
import logging
import os
import sys

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich_argparse import RichHelpFormatter

from . import __version__, preflight
from .certbot import CertbotProvisioner
from .errors import ToolMisuse
from .log import setup_logging
from .models import (
    LETSENCRYPT_DIRECTORY,
    LETSENCRYPT_STAGING_DIRECTORY,
    ProvisioningRequest,
    TargetKind,
)
from .pipeline import Provisioner

BANNER = r"""
 ___                                       ___  ___  _
| _ \_ _ _____ ___ __  _____ __  ___ ___  / __|/ __|| |
|  _/ '_/ _ \ \ / '  \/ _ \ \ / |___|___| \__ \\__ \| |__
|_| |_| \___/_\_\_|_|_\___/_\_\          |___/|___/|____|
"""

EPILOG = """EXAMPLES:
  # Proxmox VE, run as root on the host
  proxmox-ssl-setup -d proxmox.example.com -e admin@example.com -t your_cf_token -p ve

  # Proxmox Backup Server, remote with an API token
  proxmox-ssl-setup -d pbs.example.com -e admin@example.com -t your_cf_token -p pbs \\
      -a https://pbs.example.com:8007 -k 'user@pam!tokenid:secret'

Every flag marked (env) may also be given through the environment variable of the
same name. The Cloudflare token needs Zone:Read and DNS:Edit permissions.
"""

console = Console()


def _env(name):
    return os.environ.get(name) or None


def build_parser():
    parser = argparse.ArgumentParser(
        prog="proxmox-ssl-setup",
        description="Provision a Let's Encrypt certificate for Proxmox VE or Proxmox Backup Server "
        "using the Cloudflare DNS-01 challenge.",
        formatter_class=RichHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show the version of the tool and exit.",
    )
    parser.add_argument(
        "-d",
        "--domain",
        default=_env("DOMAIN"),
        help="Proxmox domain name, e.g. proxmox.example.com (env: DOMAIN).",
    )
    parser.add_argument(
        "-e",
        "--email",
        default=_env("EMAIL"),
        help="Email address for Let's Encrypt registration (env: EMAIL).",
    )
    parser.add_argument(
        "-t",
        "--cf-token",
        default=_env("CF_TOKEN"),
        help="Cloudflare API token for the DNS-01 challenge (env: CF_TOKEN).",
    )
    parser.add_argument(
        "-p",
        "--proxmox-type",
        default=_env("PROXMOX_TYPE"),
        help="Proxmox installation type: 've' or 'pbs' (env: PROXMOX_TYPE).",
    )
    parser.add_argument(
        "-a",
        "--api-url",
        default=_env("PROXMOX_API_URL"),
        help="Proxmox API URL. Default: https://localhost:8006 for ve, :8007 for pbs "
        "(env: PROXMOX_API_URL).",
    )
    parser.add_argument(
        "-k",
        "--api-token",
        default=_env("PROXMOX_API_TOKEN"),
        help="Proxmox API token. Without it the local API tool is used as root "
        "(env: PROXMOX_API_TOKEN).",
    )
    parser.add_argument(
        "-n",
        "--node",
        help="Node to configure. Default: first label of the domain for ve, 'localhost' for pbs.",
    )
    parser.add_argument(
        "-m",
        "--method",
        choices=["acme", "certbot"],
        default="acme",
        help="'acme' drives Proxmox's built-in ACME client; 'certbot' obtains the certificate "
        "with certbot and copies it into place. Default: acme",
    )
    parser.add_argument("--account-name", default="letsencrypt", help="ACME account name. Default: letsencrypt")
    parser.add_argument("--plugin-id", default="cloudflare", help="DNS plugin id. Default: cloudflare")
    parser.add_argument("--directory-url", help="ACME directory URL. Default: Let's Encrypt production.")
    parser.add_argument(
        "--staging", action="store_true", help="Use the Let's Encrypt staging directory."
    )
    parser.add_argument(
        "--no-force",
        dest="force",
        action="store_false",
        help="Do not force re-issuance when a valid certificate already exists.",
    )
    parser.add_argument(
        "--initial-delay",
        type=float,
        default=60.0,
        help="Seconds to wait after ordering before the first status check. Default: 60",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=10.0,
        help="Seconds between certificate status checks. Default: 10",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=12,
        help="Maximum number of certificate status checks. Default: 12",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Overall limit in seconds for the verification wait.",
    )
    parser.add_argument(
        "--propagation-seconds",
        type=int,
        default=30,
        help="DNS propagation wait passed to certbot (certbot method only). Default: 30",
    )
    parser.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging, including HTTP requests. Secrets are never logged.",
    )
    return parser


def build_request(args):
    """Turn parsed arguments into a ProvisioningRequest.

    Raises:
        ToolMisuse: if a required value is missing or malformed.
    """
    if args.staging and args.directory_url:
        raise ToolMisuse("--staging and --directory-url are mutually exclusive")
    if args.max_attempts < 1:
        raise ToolMisuse("--max-attempts must be at least 1")
    if args.poll_interval < 0 or args.initial_delay < 0:
        raise ToolMisuse("--poll-interval and --initial-delay must not be negative")
    if args.method == "certbot" and (args.api_token or args.api_url):
        raise ToolMisuse("--api-url and --api-token do not apply to --method certbot, which runs locally")
    directory = args.directory_url or (
        LETSENCRYPT_STAGING_DIRECTORY if args.staging else LETSENCRYPT_DIRECTORY
    )
    return ProvisioningRequest.build(
        domain=args.domain,
        contact_email=args.email,
        dns_provider_token=args.cf_token,
        target_kind=args.proxmox_type,
        management_endpoint=args.api_url,
        management_credential=args.api_token,
        node=args.node,
        account_name=args.account_name,
        plugin_id=args.plugin_id,
        directory_url=directory,
        force=args.force,
    )


def summary(request, method):
    mode = "remote (API token)" if request.remote else "local (root)"
    if method == "certbot":
        steps = [
            "Request a certificate with certbot and the Cloudflare DNS plugin",
            f"Install it to {request.target_kind.cert_path}, keeping a backup",
            f"Restart {request.target_kind.proxy_service}",
            "Verify certificate installation",
        ]
    else:
        steps = [
            "Connect to Proxmox API",
            "Register ACME account with Let's Encrypt",
            "Configure Cloudflare DNS challenge plugin",
            "Order SSL certificate via Proxmox's built-in ACME",
            "Verify certificate installation",
        ]
    lines = [
        f"Domain: {request.domain}",
        f"Email: {request.contact_email}",
        f"Proxmox Type: {request.target_kind.value} ({request.target_kind.label})",
        f"API URL: {request.management_endpoint} ({mode})",
        f"Node: {request.node}",
        "",
        "This tool will:",
    ]
    lines += [f"{i}. {step}" for i, step in enumerate(steps, 1)]
    return Panel("\n".join(lines), title="Proxmox SSL Certificate Setup")


def completion(request, method="acme"):
    port = request.target_kind.port
    if method == "certbot":
        renewal = "Certbot renews the certificate; re-run this tool to install a renewed one."
    else:
        renewal = "Certificate will auto-renew via Proxmox's built-in ACME functionality."
    return (
        "\n[bold green]SSL Certificate Setup Complete![/]\n\n"
        f"Your Proxmox instance is now accessible at:\nhttps://{request.domain}:{port}\n\n"
        f"{renewal}\n\n"
        "[yellow]Note: DNS must point to this server's IP for the certificate to work externally.[/]\n"
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    logger = logging.getLogger("proxmox-ssl-setup")

    try:
        request = build_request(args)
    except ToolMisuse as e:
        parser.print_usage(sys.stderr)
        logger.error(f"Error: {e}")
        return e.exit_code

    console.print(BANNER, style="bold cyan", justify="center")
    console.print(summary(request, args.method))
    if not args.yes and not Confirm.ask("Continue?", default=False, console=console):
        return 0

    if args.method == "certbot":
        provisioner = CertbotProvisioner(request, propagation_seconds=args.propagation_seconds)
    else:
        provisioner = Provisioner(
            request,
            initial_delay=args.initial_delay,
            poll_interval=args.poll_interval,
            max_attempts=args.max_attempts,
            timeout=args.timeout,
        )
    code = provisioner.run()
    if code == 0:
        console.print(completion(request, args.method))
    return code


def build_check_parser():
    parser = argparse.ArgumentParser(
        prog="proxmox-ssl-check",
        description="Validate a Proxmox host before running proxmox-ssl-setup. Makes no changes.",
        formatter_class=RichHelpFormatter,
    )
    parser.add_argument("-d", "--domain", default=_env("DOMAIN"), help="Domain to resolve (env: DOMAIN).")
    parser.add_argument(
        "-t", "--cf-token", default=_env("CF_TOKEN"), help="Cloudflare API token to verify (env: CF_TOKEN)."
    )
    parser.add_argument(
        "-p",
        "--proxmox-type",
        default=_env("PROXMOX_TYPE"),
        help="Proxmox installation type, detected when omitted (env: PROXMOX_TYPE).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def check_main(argv=None):
    parser = build_check_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    try:
        kind = TargetKind.parse(args.proxmox_type) if args.proxmox_type else None
    except ToolMisuse as e:
        parser.print_usage(sys.stderr)
        logging.getLogger("proxmox-ssl-check").error(f"Error: {e}")
        return e.exit_code

    results = preflight.run_checks(domain=args.domain, token=args.cf_token, kind=kind)
    console.print(preflight.render(results))
    if any(r.status == preflight.FAIL for r in results):
        return 1
    kind_value = kind.value if kind else "ve|pbs"
    console.print(
        "If all checks passed, you can run the SSL setup:\n"
        f"sudo proxmox-ssl-setup -d your-domain.com -e your-email@example.com -t your-cf-token -p {kind_value}"
    )
    return 0

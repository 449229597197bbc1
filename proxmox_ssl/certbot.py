"""File-copy variant: certbot issues, the tool installs the files.

Certbot runs with its ``dns-cloudflare`` authenticator. The issued
certificate and key are copied over the proxy's certificate files, the
previous files are kept as timestamped backups, and the proxy service is
restarted.
"""

import logging
import os
import shutil
import tempfile
import threading
import traceback
from datetime import datetime

from . import verify
from .client import run_command
from .errors import IssuanceFailed, ProvisioningError, Unauthorized, Unreachable, ValidationFailed
from .models import CertificateOrder, InstalledCertificate, OrderStatus, PipelineState

CERTBOT_LIVE_DIR = "/etc/letsencrypt/live"
CERT_MODE = 0o640


def write_credentials(directory, token):
    """Write the Cloudflare credentials INI certbot reads, owner read/write only."""
    path = os.path.join(directory, "cloudflare.ini")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(f"dns_cloudflare_api_token = {token}\n")
    os.chmod(path, 0o600)
    return path


def backup_file(path, stamp):
    """Copy ``path`` to ``<path>.backup.<stamp>`` if it exists.

    Returns:
        str or None: the backup path, or None if there was nothing to keep.
    """
    if not os.path.exists(path):
        return None
    backup = f"{path}.backup.{stamp}"
    shutil.copy2(path, backup)
    return backup


class CertbotProvisioner:
    """Runs ``Start -> Probed -> OrderPlaced -> Installed -> Verified``.

    Attributes:
        request: the validated ProvisioningRequest.
        runner: callable taking an argv list, returning a CompletedProcess.
        live_dir: certbot's live directory holding ``<domain>/fullchain.pem``.
        cert_path, key_path: destination files, defaulting to the target's.
        owner_group: (user, group) for the installed files; None skips chown.
    """

    def __init__(self, request, runner=run_command, live_dir=CERTBOT_LIVE_DIR,
                 cert_path=None, key_path=None, owner_group=None,
                 propagation_seconds=30, smoke_test=True, require_root=True):
        kind = request.target_kind
        self.request = request
        self.runner = runner
        self.live_dir = live_dir
        self.cert_path = cert_path or kind.cert_path
        self.key_path = key_path or kind.key_path
        self.owner_group = owner_group if owner_group is not None else ("root", kind.cert_group)
        self.propagation_seconds = propagation_seconds
        self.smoke_test = smoke_test
        self.require_root = require_root
        self.cancel = threading.Event()
        self.logger = logging.getLogger("CertbotProvisioner")
        self.state = PipelineState.START
        self.history = [PipelineState.START]
        self.order = None
        self.installed = None

    def _advance(self, state):
        self.state = state
        self.history.append(state)
        self.logger.debug(f"Pipeline state: {state.value}")

    def _run(self, argv, redacted=None):
        self.logger.debug(f"Running: {' '.join(redacted or argv)}")
        try:
            return self.runner(argv)
        except FileNotFoundError as e:
            raise Unreachable(f"{argv[0]} is required but not installed") from e

    def check_prerequisites(self):
        """Require root and a working certbot.

        Raises:
            Unauthorized: if not running as root.
            Unreachable: if certbot is missing or broken.
        """
        self.logger.info("Checking prerequisites...")
        if self.require_root and os.geteuid() != 0:
            raise Unauthorized("This tool must be run as root to install certificate files")
        proc = self._run(["certbot", "--version"])
        if proc.returncode != 0:
            raise Unreachable("certbot is required but not working", proc.stderr)
        self.logger.info(f"Certbot is installed: {(proc.stdout or proc.stderr).strip()}")
        self._advance(PipelineState.PROBED)

    def certbot_argv(self, credentials_path):
        request = self.request
        argv = [
            "certbot", "certonly",
            "--dns-cloudflare",
            "--dns-cloudflare-credentials", credentials_path,
            "--dns-cloudflare-propagation-seconds", str(self.propagation_seconds),
            "-d", request.domain,
            "-m", request.contact_email,
            "--cert-name", request.domain,
            "--server", request.directory_url,
            "--agree-tos",
            "--non-interactive",
        ]
        argv.append("--force-renewal" if request.force else "--keep-until-expiring")
        return argv

    def request_certificate(self):
        """Run certbot with a throwaway credentials file.

        Returns:
            CertificateOrder
        Raises:
            IssuanceFailed: if certbot exits non-zero; carries its output.
        """
        request = self.request
        self.logger.info(f"Requesting certificate for {request.domain} with certbot...")
        self.order = CertificateOrder(
            domain=request.domain,
            plugin_id="dns-cloudflare",
            account_name=request.contact_email,
            node=request.node,
        )
        with tempfile.TemporaryDirectory(prefix="proxmox-ssl-") as tmp:
            credentials = write_credentials(tmp, request.dns_provider_token)
            proc = self._run(self.certbot_argv(credentials))
        if proc.returncode != 0:
            self.order.status = OrderStatus.FAILED
            raise IssuanceFailed("certbot failed to obtain the certificate", proc.stderr or proc.stdout)
        self.logger.info("Certificate obtained successfully")
        self._advance(PipelineState.ORDER_PLACED)
        return self.order

    def install_certificate(self, now=None):
        """Copy the issued files into place, backing up what was there.

        Returns:
            InstalledCertificate
        """
        live = os.path.join(self.live_dir, self.request.domain)
        fullchain = os.path.join(live, "fullchain.pem")
        privkey = os.path.join(live, "privkey.pem")
        for path in (fullchain, privkey):
            if not os.path.exists(path):
                raise IssuanceFailed(f"Issued file not found: {path}")

        stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
        backups = []
        for src, dest in ((fullchain, self.cert_path), (privkey, self.key_path)):
            backup = backup_file(dest, stamp)
            if backup:
                self.logger.info(f"Backed up {dest} to {backup}")
                backups.append(backup)
            shutil.copyfile(src, dest)
            os.chmod(dest, CERT_MODE)
            if self.owner_group:
                shutil.chown(dest, user=self.owner_group[0], group=self.owner_group[1])
            self.logger.info(f"Installed {dest}")

        with open(self.cert_path, "rb") as fh:
            expiry = verify.describe_certificate(fh.read())["not_after"]

        self.installed = InstalledCertificate(
            cert_path=self.cert_path,
            key_path=self.key_path,
            backup_paths=tuple(backups),
            owner=":".join(self.owner_group) if self.owner_group else "",
            mode=CERT_MODE,
            expiry=expiry,
        )
        self.restart_proxy()
        self._advance(PipelineState.INSTALLED)
        return self.installed

    def restart_proxy(self):
        """Restart the proxy so it picks up the new files."""
        service = self.request.target_kind.proxy_service
        self.logger.info(f"Restarting {service}...")
        proc = self._run(["systemctl", "restart", service])
        if proc.returncode != 0:
            raise ValidationFailed(f"Failed to restart {service}", proc.stderr)

    def verify_certificate(self):
        self.logger.info("Verifying certificate installation...")
        self.order.status = OrderStatus.VALID
        self.logger.info(f"Installed certificate expires: {self.installed.expiry:%Y-%m-%d %H:%M:%S} UTC")
        if self.smoke_test:
            port = self.request.target_kind.port
            # The proxy needs a moment after restart before it accepts TLS.
            self.cancel.wait(5)
            verify.https_smoke_test(self.request.domain, port)
            verify.log_served_certificate(self.request.domain, port)
        self._advance(PipelineState.VERIFIED)

    def run(self):
        """Run every stage in order and return the process exit code."""
        try:
            self.check_prerequisites()
            self.request_certificate()
            self.install_certificate()
            self.verify_certificate()
            return 0
        except ProvisioningError as e:
            self.logger.error(f"ERROR [{e.kind}]: {e}")
            self._advance(PipelineState.ABORTED)
            return e.exit_code
        except KeyboardInterrupt:
            self.cancel.set()
            self.logger.error("Interrupted")
            self._advance(PipelineState.ABORTED)
            return 130
        except Exception as e:
            tb = traceback.extract_tb(e.__traceback__)
            if tb:
                filename, lineno, func, text = tb[-1]
                self.logger.error(f"An error occurred at {filename}, line {lineno}: {e}")
            else:
                self.logger.error(f"An error occurred: {e}")
            self._advance(PipelineState.ABORTED)
            return 1

import logging
import socket
import ssl
import time
from datetime import datetime, timezone

import httpx
from cryptography import x509

from .client import Outcome, classify
from .errors import IssuanceFailed, VerificationTimeout
from .models import CertificateStatus

logger = logging.getLogger("Verifier")


def find_certificate(listing, domain):
    """Search a certificates/info listing for an entry covering ``domain``.

    Args:
        listing: the decoded ``data`` list of the certificates/info call.
        domain: the requested domain name.
    Returns:
        CertificateStatus: ``present`` with the entry's ``notafter`` and
        fingerprint, or ``absent``.
    """
    domain = domain.lower()
    for entry in listing or []:
        if not isinstance(entry, dict):
            continue
        sans = entry.get("san") or []
        if isinstance(sans, str):
            sans = [sans]
        if domain in (s.lower() for s in sans):
            return CertificateStatus(
                CertificateStatus.PRESENT,
                expiry=entry.get("notafter"),
                fingerprint=entry.get("fingerprint"),
                detail=entry.get("filename"),
            )
    return CertificateStatus.absent()


def format_expiry(value):
    """Render ``notafter`` for humans; the API reports it as a unix timestamp."""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    return str(value) if value is not None else "unknown"


def task_failed(exit_status):
    """Whether a stopped task's ``exitstatus`` means failure.

    A task that finished but logged warnings stops with ``WARNINGS: <n>``,
    which is still a success.
    """
    if not exit_status:
        return False
    return exit_status != "OK" and not exit_status.startswith("WARNINGS")


def _task_log_text(client, node, upid):
    """Flatten a task log into its text lines."""
    result = client.task_log(node, upid)
    if not result.ok or not isinstance(result.data, list):
        return result.message
    return "\n".join(str(line.get("t", "")) for line in result.data if isinstance(line, dict))


def check_status(client, order):
    """One verification attempt.

    If the order task is known and still running the status is ``pending``;
    a task that stopped with an error raises ``IssuanceFailed`` carrying the
    task log. Otherwise the certificate listing decides.
    """
    if order.task_id:
        task = client.task_status(order.node, order.task_id)
        if task.ok and isinstance(task.data, dict):
            if task.data.get("status") == "running":
                return CertificateStatus.pending("order task still running"), task.text
            exit_status = task.data.get("exitstatus")
            if task_failed(exit_status):
                raise IssuanceFailed(
                    f"Certificate order task failed: {exit_status}",
                    _task_log_text(client, order.node, order.task_id),
                )

    result = client.certificate_info(order.node)
    if classify(result) is not Outcome.OK:
        logger.warning(f"Could not list certificates: {result.message}")
        return CertificateStatus.absent(result.message), result.message
    return find_certificate(result.data, order.domain), result.text


def poll_certificate(client, order, initial_delay=30.0, interval=10.0, max_attempts=12,
                     timeout=None, cancel=None, clock=time.monotonic, sleep=None):
    """Wait for issuance to finish and the certificate to appear on the node.

    Issuance runs asynchronously on the host with no notification, so the
    loop sleeps ``initial_delay`` and then checks every ``interval`` seconds,
    at most ``max_attempts`` times and never past ``timeout`` seconds overall.
    Setting the ``cancel`` event stops the wait early.

    Returns:
        CertificateStatus: the ``present`` status.
    Raises:
        IssuanceFailed: if the order task reported an error.
        VerificationTimeout: if attempts, time or the cancel event ran out
            first; carries the last server response.
    """
    if sleep is None:
        sleep = cancel.wait if cancel is not None else time.sleep
    deadline = clock() + timeout if timeout else None

    def _wait(seconds):
        if deadline is not None:
            seconds = min(seconds, max(0.0, deadline - clock()))
        if seconds > 0:
            sleep(seconds)
        return not (cancel is not None and cancel.is_set())

    logger.info(f"Waiting {initial_delay:g}s for the certificate to be processed...")
    last_body = None
    last_status = CertificateStatus.absent()
    if _wait(initial_delay):
        for attempt in range(1, max_attempts + 1):
            last_status, last_body = check_status(client, order)
            if last_status.present:
                return last_status
            logger.info(
                f"Attempt {attempt}/{max_attempts}: certificate for {order.domain} is {last_status.state}"
            )
            if attempt == max_attempts:
                break
            if deadline is not None and clock() >= deadline:
                break
            if not _wait(interval):
                break

    raise VerificationTimeout(
        f"No certificate found for {order.domain} (last status: {last_status.state})",
        last_body,
    )


def https_smoke_test(domain, port, timeout=10.0, transport=None):
    """Best-effort check that the proxy answers HTTPS on ``domain:port``.

    Any HTTP response counts, the login page redirects on some versions.
    """
    url = f"https://{domain}:{port}/"
    try:
        with httpx.Client(verify=False, timeout=timeout, transport=transport) as client:
            resp = client.head(url)
    except httpx.HTTPError as e:
        logger.warning(f"HTTPS check failed: {e}. Proxmox might still be starting up.")
        return False
    logger.info(f"Proxmox HTTPS is working on port {port} (HTTP {resp.status_code})")
    return True


def describe_certificate(pem):
    """Return subject, issuer and the validity window of a PEM certificate."""
    cert = x509.load_pem_x509_certificate(pem.encode("ascii") if isinstance(pem, str) else pem)
    return {
        "subject": cert.subject.rfc4514_string(),
        "issuer": cert.issuer.rfc4514_string(),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
    }


def served_certificate(domain, port, timeout=10.0):
    """Fetch and describe the certificate the proxy currently serves."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    with socket.create_connection((domain, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=domain) as tls:
            der = tls.getpeercert(binary_form=True)
    return describe_certificate(ssl.DER_cert_to_PEM_cert(der))


def log_served_certificate(domain, port):
    logger.info("Certificate details:")
    try:
        details = served_certificate(domain, port)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not retrieve certificate details: {e}")
        return None
    logger.info(f"subject={details['subject']}")
    logger.info(f"issuer={details['issuer']}")
    logger.info(f"notBefore={details['not_before']:%Y-%m-%d %H:%M:%S} UTC")
    logger.info(f"notAfter={details['not_after']:%Y-%m-%d %H:%M:%S} UTC")
    return details

import threading

import httpx
import pytest

from proxmox_ssl.client import HttpManagementClient, LocalManagementClient
from proxmox_ssl.errors import IssuanceFailed, VerificationTimeout
from proxmox_ssl.models import CertificateOrder, CertificateStatus, TargetKind
from proxmox_ssl.verify import (
    describe_certificate,
    find_certificate,
    format_expiry,
    https_smoke_test,
    poll_certificate,
)

from .conftest import API_TOKEN, FakeProxmox, make_certificate

LISTING = [
    {"filename": "pve-root-ca.pem", "san": None, "fingerprint": "00:11", "notafter": "2034-01-01"},
    {
        "filename": "pveproxy-ssl.pem",
        "san": ["proxmox.example.com"],
        "fingerprint": "AA:BB...",
        "notafter": "2025-03-01",
    },
]


def test_find_certificate_present():
    status = find_certificate(LISTING, "proxmox.example.com")
    assert status.state == CertificateStatus.PRESENT
    assert status.expiry == "2025-03-01"
    assert status.fingerprint == "AA:BB..."


def test_find_certificate_absent():
    assert find_certificate(LISTING, "other.example.com").state == CertificateStatus.ABSENT
    assert find_certificate(None, "proxmox.example.com").state == CertificateStatus.ABSENT


def test_format_expiry():
    assert format_expiry(1767225600) == "2026-01-01 00:00:00 UTC"
    assert format_expiry("2025-03-01") == "2025-03-01"
    assert format_expiry(None) == "unknown"


def _client(server):
    return HttpManagementClient(TargetKind.VE, "https://pve:8006", API_TOKEN, transport=server.transport())


def _order(task_id="UPID:pve1:00001234:acmenewcert:"):
    return CertificateOrder(
        domain="pve1.example.com", plugin_id="cloudflare", account_name="letsencrypt", node="pve1", task_id=task_id
    )


def test_poll_returns_once_certificate_appears():
    server = FakeProxmox()
    server.task_state = {"status": "running"}
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            server.task_state = {"status": "stopped", "exitstatus": "OK"}
            server.certificates.append({"san": ["pve1.example.com"], "notafter": 1767225600, "fingerprint": "AA"})

    status = poll_certificate(_client(server), _order(), initial_delay=30, interval=5, max_attempts=5, sleep=sleep)
    assert status.present
    assert status.expiry == 1767225600
    assert sleeps == [30, 5, 5]


def test_poll_gives_up_after_max_attempts():
    server = FakeProxmox()
    with pytest.raises(VerificationTimeout) as exc:
        poll_certificate(_client(server), _order(task_id=None), initial_delay=0, interval=1, max_attempts=3,
                         sleep=lambda s: None)
    assert "last status: absent" in str(exc.value)
    certificate_listings = [c for c in server.calls if c[1] == "/nodes/pve1/certificates/info"]
    assert len(certificate_listings) == 3


def test_poll_honours_overall_timeout():
    server = FakeProxmox()
    now = [0.0]

    def sleep(seconds):
        now[0] += seconds

    with pytest.raises(VerificationTimeout):
        poll_certificate(_client(server), _order(task_id=None), initial_delay=10, interval=10, max_attempts=100,
                         timeout=35, clock=lambda: now[0], sleep=sleep)
    assert now[0] == 35


def test_poll_stops_when_cancelled():
    server = FakeProxmox()
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(VerificationTimeout):
        poll_certificate(_client(server), _order(), initial_delay=60, cancel=cancel)
    assert server.calls == []


def test_failed_task_raises_with_log():
    server = FakeProxmox()
    server.task_state = {"status": "stopped", "exitstatus": "command 'setup_dns' failed"}
    with pytest.raises(IssuanceFailed) as exc:
        poll_certificate(_client(server), _order(), initial_delay=0, sleep=lambda s: None)
    assert "TASK ERROR: dns timeout" in exc.value.response_body


def test_failed_task_raises_with_log_over_local_tool(as_root):
    server = FakeProxmox()
    server.task_state = {"status": "stopped", "exitstatus": "command 'setup_dns' failed"}
    client = LocalManagementClient(TargetKind.VE, runner=server.runner)
    with pytest.raises(IssuanceFailed) as exc:
        poll_certificate(client, _order(), initial_delay=0, sleep=lambda s: None)
    assert "TASK ERROR: dns timeout" in exc.value.response_body


def test_task_finished_with_warnings_is_success():
    server = FakeProxmox()
    server.task_state = {"status": "stopped", "exitstatus": "WARNINGS: 1"}
    server.certificates.append({"san": ["pve1.example.com"], "notafter": 1767225600, "fingerprint": "AA"})
    status = poll_certificate(_client(server), _order(), initial_delay=0, sleep=lambda s: None)
    assert status.present
    assert status.expiry == 1767225600


def test_smoke_test_accepts_any_http_response():
    transport = httpx.MockTransport(lambda request: httpx.Response(302, headers={"Location": "/login"}))
    assert https_smoke_test("pve1.example.com", 8006, transport=transport)


def test_smoke_test_failure_is_not_fatal():
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    assert not https_smoke_test("pve1.example.com", 8006, transport=httpx.MockTransport(refuse))


def test_describe_certificate():
    cert_pem, _ = make_certificate("pve1.example.com", days=30)
    details = describe_certificate(cert_pem)
    assert details["subject"] == "CN=pve1.example.com"
    assert (details["not_after"] - details["not_before"]).days == 31

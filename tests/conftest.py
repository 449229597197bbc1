import base64
import json
import subprocess
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, unquote

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from proxmox_ssl.models import ProvisioningRequest, TargetKind

API_TOKEN = "root@pam!ssl=0f6b3c1e-aaaa-bbbb-cccc-1234567890ab"


class FakeProxmox:
    """In-memory stand-in for the ACME parts of the Proxmox API.

    ``handle`` answers one call; ``transport()`` and ``runner`` expose it
    through httpx and through the local API tool's command line.
    """

    MUTATING = ("POST", "PUT", "DELETE")

    def __init__(self, kind=TargetKind.VE, token=API_TOKEN, version="8.2.4"):
        self.kind = kind
        self.token = token
        self.version = version
        self.accounts = {}
        self.plugins = {}
        self.node_config = {}
        self.certificates = []
        self.calls = []
        self.task_state = {"status": "stopped", "exitstatus": "OK"}
        self.fail_order = False
        self.fail_node_config = False
        self.issue_on_order = True

    @property
    def mutating_calls(self):
        return [c for c in self.calls if c[0] in self.MUTATING]

    def handle(self, method, path, params):
        self.calls.append((method, path, dict(params)))
        acme = self.kind.acme_prefix
        if method == "GET" and path == "/version":
            return 200, {"version": self.version, "release": self.version[:3]}, ""
        if method == "GET" and path == f"{acme}/tos":
            return 200, "https://letsencrypt.org/documents/current-tos.pdf", ""
        if method == "POST" and path == f"{acme}/account":
            name = params["name"]
            if name in self.accounts:
                return 500, None, f"account '{name}' already exists"
            self.accounts[name] = dict(params)
            return 200, "UPID:pve1:0001:account:", ""
        if method == "POST" and path == f"{acme}/plugins":
            pid = params["id"]
            if pid in self.plugins:
                return 500, None, f"ACME plugin ID '{pid}' already exists"
            self.plugins[pid] = dict(params)
            return 200, None, ""
        if method == "PUT" and path.startswith(f"{acme}/plugins/"):
            pid = unquote(path.rsplit("/", 1)[1])
            if pid not in self.plugins:
                return 500, None, f"ACME plugin '{pid}' not defined"
            self.plugins[pid].update(params)
            return 200, None, ""
        if path.startswith("/nodes/"):
            node, rest = path[len("/nodes/"):].split("/", 1)
            if method == "PUT" and rest == "config":
                if self.fail_node_config:
                    return 500, None, "unable to write node config"
                self.node_config[node] = dict(params)
                return 200, None, ""
            if method == "POST" and rest == "certificates/acme/certificate":
                if self.fail_order:
                    return 500, None, "no ACME account configured for node"
                if self.issue_on_order:
                    domain = self.node_config.get(node, {}).get("acmedomain0", "").split(",")[0]
                    self.certificates.append(
                        {
                            "filename": "pveproxy-ssl.pem",
                            "fingerprint": "AA:BB:CC:DD",
                            "notafter": 1767225600,
                            "san": [domain.replace("domain=", "")],
                        }
                    )
                return 200, f"UPID:{node}:00001234:acmenewcert:", ""
            if method == "GET" and rest.startswith("tasks/") and rest.endswith("/status"):
                return 200, dict(self.task_state), ""
            if method == "GET" and rest.startswith("tasks/") and rest.endswith("/log"):
                return 200, [{"n": 1, "t": "validating challenge"}, {"n": 2, "t": "TASK ERROR: dns timeout"}], ""
            if method == "GET" and rest == "certificates/info":
                return 200, list(self.certificates), ""
        return 501, None, f"Method '{method} {path}' not implemented"

    def transport(self):
        def handler(request):
            if request.headers.get("Authorization") != f"{self.kind.token_scheme}={self.token}":
                return httpx.Response(401, json={"data": None}, extensions={"reason_phrase": b"invalid token value!"})
            path = request.url.path.removeprefix("/api2/json")
            if request.method in ("GET", "DELETE"):
                params = dict(request.url.params)
            else:
                params = dict(parse_qsl(request.content.decode()))
            status, data, text = self.handle(request.method, path, params)
            if status == 200:
                return httpx.Response(200, json={"data": data})
            return httpx.Response(status, json={"data": None}, extensions={"reason_phrase": text.encode()})

        return httpx.MockTransport(handler)

    def runner(self, argv):
        verbs = {"get": "GET", "create": "POST", "set": "PUT", "delete": "DELETE"}
        tool_len = len(self.kind.local_cli)
        verb, path, rest = argv[tool_len], argv[tool_len + 1], argv[tool_len + 2:]
        if "%" in path:
            return subprocess.CompletedProcess(argv, 255, stdout="", stderr=f"no such path '{path}'")
        params = {}
        for flag, value in zip(rest[::2], rest[1::2]):
            if flag != "--output-format":
                params[flag[2:]] = value
        status, data, text = self.handle(verbs[verb], path, params)
        if status == 200:
            stdout = json.dumps(data) if data is not None else ""
            return subprocess.CompletedProcess(argv, 0, stdout=stdout, stderr="")
        return subprocess.CompletedProcess(argv, 255, stdout="", stderr=text)


def plugin_token(plugin):
    return base64.b64decode(plugin["data"]).decode().split("=", 1)[1]


def make_certificate(domain, days=90):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    return cert.public_bytes(serialization.Encoding.PEM), key_pem


@pytest.fixture
def server():
    return FakeProxmox()


@pytest.fixture
def local_request():
    return ProvisioningRequest.build(
        domain="pve1.example.com",
        contact_email="admin@example.com",
        dns_provider_token="cftok",
        target_kind="ve",
    )


@pytest.fixture
def remote_request():
    return ProvisioningRequest.build(
        domain="pve1.example.com",
        contact_email="admin@example.com",
        dns_provider_token="cftok",
        target_kind="ve",
        management_endpoint="https://pve1.example.com:8006",
        management_credential=API_TOKEN,
    )


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr("proxmox_ssl.client.os.geteuid", lambda: 0)
    monkeypatch.setattr("proxmox_ssl.client.shutil.which", lambda name: f"/usr/bin/{name}")

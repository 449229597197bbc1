"""Access to the Proxmox management API.

Stages talk to a ``ManagementClient``. The high level ACME calls are written
once on the base class on top of ``request()``, which the two transports
implement: ``HttpManagementClient`` for remote access with an API token and
``LocalManagementClient`` which shells out to the host's own API tool
(``pvesh`` or ``proxmox-backup-debug api``) as root.
"""

import base64
import enum
import json
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from .errors import Unauthorized, Unreachable, UnexpectedResponse

_ALREADY_EXISTS_RE = re.compile(r"already (exists|defined)", re.IGNORECASE)
_UNAUTHORIZED_RE = re.compile(
    r"(permission check failed|permission denied|authentication failure|401 )",
    re.IGNORECASE,
)

# API parameters whose values must never be logged.
SECRET_PARAMS = {"data", "password", "token"}


class Outcome(enum.Enum):
    OK = "ok"
    ALREADY_EXISTS = "already_exists"
    UNAUTHORIZED = "unauthorized"
    FAILED = "failed"


@dataclass
class ApiResult:
    """Decoded answer of one management API call.

    ``status_code`` is the HTTP status for the REST transport and ``None`` for
    the local tool, where ``ok`` mirrors the process exit status.
    """

    ok: bool
    data: object = None
    text: str = ""
    status_code: int | None = None

    @property
    def message(self):
        return self.text.strip() or (f"HTTP {self.status_code}" if self.status_code else "")


def classify(result):
    """Map a call result to an ``Outcome``.

    The API answers an existing account or plugin with varying status codes,
    so the decoded error text decides ``ALREADY_EXISTS``, not the code.
    """
    if result.ok:
        return Outcome.OK
    if _ALREADY_EXISTS_RE.search(result.text or ""):
        return Outcome.ALREADY_EXISTS
    if result.status_code in (401, 403) or (
        result.status_code is None and _UNAUTHORIZED_RE.search(result.text or "")
    ):
        return Outcome.UNAUTHORIZED
    return Outcome.FAILED


def redact(params):
    return {k: ("********" if k in SECRET_PARAMS else v) for k, v in (params or {}).items()}


class ManagementClient:
    """Common ACME operations over an abstract transport."""

    def __init__(self, target_kind):
        self.target_kind = target_kind
        self.logger = logging.getLogger("ManagementClient")

    def request(self, method, path, params=None):
        """Send one API call.

        Args:
            method: GET, POST, PUT or DELETE.
            path: API path below the api2/json root, e.g. ``/version``.
            params: query or form parameters.
        Returns:
            ApiResult: failures the server reports are returned, not raised.
        Raises:
            Unreachable: if the transport itself failed.
        """
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _acme(self, path):
        return f"{self.target_kind.acme_prefix}{path}"

    def _segment(self, value):
        """Quote ``value`` for use as one path segment."""
        return quote(value, safe="")

    def version(self):
        return self.request("GET", "/version")

    def terms_of_service(self, directory_url):
        return self.request("GET", self._acme("/tos"), {"directory": directory_url})

    def create_account(self, account, tos_url):
        return self.request(
            "POST",
            self._acme("/account"),
            {
                "name": account.name,
                "contact": account.contact,
                "directory": account.directory_url,
                "tos_url": tos_url,
            },
        )

    def create_plugin(self, plugin):
        return self.request(
            "POST",
            self._acme("/plugins"),
            {
                "id": plugin.id,
                "type": plugin.kind,
                "api": plugin.api,
                "data": _encode_plugin_data(plugin.data),
            },
        )

    def update_plugin(self, plugin):
        return self.request(
            "PUT",
            self._acme(f"/plugins/{self._segment(plugin.id)}"),
            {"api": plugin.api, "data": _encode_plugin_data(plugin.data)},
        )

    def set_node_config(self, node, domain, account_name, plugin_id):
        return self.request(
            "PUT",
            f"/nodes/{node}/config",
            {
                "acme": f"account={account_name}",
                "acmedomain0": f"domain={domain},plugin={plugin_id}",
            },
        )

    def order_certificate(self, node, force=True):
        return self.request(
            "POST",
            f"/nodes/{node}/certificates/acme/certificate",
            {"force": 1 if force else 0},
        )

    def task_status(self, node, upid):
        return self.request("GET", f"/nodes/{node}/tasks/{self._segment(upid)}/status")

    def task_log(self, node, upid):
        return self.request("GET", f"/nodes/{node}/tasks/{self._segment(upid)}/log")

    def certificate_info(self, node):
        return self.request("GET", f"/nodes/{node}/certificates/info")


def _encode_plugin_data(data):
    return base64.b64encode(data.encode("utf-8")).decode("ascii")


class HttpManagementClient(ManagementClient):
    """REST transport authenticated with a Proxmox API token.

    Certificate verification is disabled: the certificate currently served by
    the proxy is usually the self-signed one being replaced.
    """

    def __init__(self, target_kind, endpoint, token, timeout=30.0, transport=None):
        super().__init__(target_kind)
        self.base_url = f"{endpoint.rstrip('/')}/api2/json"
        self.client = httpx.Client(
            base_url=self.base_url,
            headers={
                "Authorization": f"{target_kind.token_scheme}={token}",
                "Accept": "application/json",
                "User-Agent": "proxmox-ssl-setup",
            },
            timeout=timeout,
            verify=False,
            transport=transport,
        )

    def close(self):
        self.client.close()

    def request(self, method, path, params=None):
        """Send the call over HTTPS; GET and DELETE use a query string, the rest a form body."""
        self.logger.debug(f"{method} {self.base_url}{path} {redact(params)}")
        try:
            if method in ("GET", "DELETE"):
                resp = self.client.request(method, path, params=params)
            else:
                resp = self.client.request(method, path, data=params or {})
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise Unreachable(
                f"Cannot connect to Proxmox API at {self.base_url}: {e}"
            ) from e
        except httpx.TransportError as e:
            raise Unreachable(f"Transport error talking to {self.base_url}: {e}") from e

        self.logger.debug(f"Response status code: {resp.status_code}")
        return self._decode(resp)

    @staticmethod
    def _decode(resp):
        data = None
        text = resp.text
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            data = body.get("data")
            if not resp.is_success:
                # Parameter errors arrive as {"errors": {param: reason}}.
                parts = [body.get("message") or ""]
                errors = body.get("errors")
                if isinstance(errors, dict):
                    parts.extend(f"{k}: {v}" for k, v in errors.items())
                joined = "; ".join(p.strip() for p in parts if p and p.strip())
                text = joined or resp.reason_phrase or text
        if not resp.is_success and not (text or "").strip():
            text = resp.reason_phrase
        return ApiResult(
            ok=resp.is_success, data=data, text=text or "", status_code=resp.status_code
        )


def run_command(argv):
    return subprocess.run(argv, capture_output=True, text=True, check=False)


class LocalManagementClient(ManagementClient):
    """Transport through the host's API command line tool, run as root."""

    VERBS = {"GET": "get", "POST": "create", "PUT": "set", "DELETE": "delete"}

    def __init__(self, target_kind, runner=run_command):
        super().__init__(target_kind)
        self.runner = runner
        self.tool = list(target_kind.local_cli)

    def ensure_available(self):
        """Fail fast unless the local API tool can be run with privilege.

        Raises:
            Unauthorized: if not running as root.
            Unreachable: if the tool is not installed.
        """
        if os.geteuid() != 0:
            raise Unauthorized(
                "This tool must be run as root for local Proxmox access "
                "or be given an API token for remote access"
            )
        if shutil.which(self.tool[0]) is None:
            raise Unreachable(
                f"{self.tool[0]} is required for local access but not found. "
                "Are you running on a Proxmox host?"
            )

    def _segment(self, value):
        # The local tools take the path verbatim and do not percent-decode it.
        return value

    def argv(self, method, path, params=None):
        argv = [*self.tool, self.VERBS[method], path]
        for k, v in (params or {}).items():
            argv += [f"--{k}", str(v)]
        argv += ["--output-format", "json"]
        return argv

    def request(self, method, path, params=None):
        """Run the local API tool; stdout is decoded as JSON when it parses."""
        argv = self.argv(method, path, params)
        self.logger.debug(f"Running: {' '.join(self.argv(method, path, redact(params)))}")
        try:
            proc = self.runner(argv)
        except FileNotFoundError as e:
            raise Unreachable(f"{self.tool[0]} not found: {e}") from e

        stdout = (proc.stdout or "").strip()
        stderr = (proc.stderr or "").strip()
        data = None
        if stdout:
            try:
                data = json.loads(stdout)
            except ValueError:
                data = stdout
        self.logger.debug(f"{self.tool[0]} exit status: {proc.returncode}")
        return ApiResult(
            ok=proc.returncode == 0,
            data=data,
            text="\n".join(t for t in (stderr, "" if proc.returncode == 0 else stdout) if t),
        )


def probe(client):
    """Query the API version, the only non-mutating call made before stages run.

    Returns:
        str: the version string reported by the host.
    Raises:
        Unreachable, Unauthorized, UnexpectedResponse
    """
    if isinstance(client, LocalManagementClient):
        client.ensure_available()
    result = client.version()
    outcome = classify(result)
    if outcome is Outcome.UNAUTHORIZED:
        raise Unauthorized("Authentication failed. Please check your API token", result.message)
    if outcome is not Outcome.OK:
        if result.status_code is None:
            raise Unreachable("Cannot connect to Proxmox API via local tool", result.message)
        raise UnexpectedResponse(
            f"Proxmox API returned HTTP {result.status_code}", result.message
        )
    if not isinstance(result.data, dict):
        raise UnexpectedResponse("Proxmox API version response had no data", result.text)
    return str(result.data.get("version") or "unknown")


def build_client(request, transport=None, runner=None):
    """Pick the transport: a management credential means remote REST access."""
    if request.remote:
        return HttpManagementClient(
            request.target_kind,
            request.management_endpoint,
            request.management_credential,
            transport=transport,
        )
    if runner is None:
        return LocalManagementClient(request.target_kind)
    return LocalManagementClient(request.target_kind, runner=runner)

import enum
import re
from dataclasses import dataclass, field
from urllib.parse import urlparse

from .errors import ToolMisuse

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_TOS_URL = "https://letsencrypt.org/documents/LE-SA-v1.4-April-3-2024.pdf"

DEFAULT_ACCOUNT_NAME = "letsencrypt"
DEFAULT_PLUGIN_ID = "cloudflare"
CLOUDFLARE_API = "cf"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,63}$"
)


class TargetKind(enum.Enum):
    """The Proxmox product being provisioned.

    Each member knows the product specific bits the stages need: the HTTPS
    port of the proxy, the local API command line tool, where ACME objects
    live in the API tree, the API token scheme and the proxy certificate
    files used by the certbot variant.
    """

    VE = "ve"
    PBS = "pbs"

    @property
    def port(self):
        return 8006 if self is TargetKind.VE else 8007

    @property
    def label(self):
        return "Proxmox VE" if self is TargetKind.VE else "Proxmox Backup Server"

    @property
    def local_cli(self):
        if self is TargetKind.VE:
            return ["pvesh"]
        return ["proxmox-backup-debug", "api"]

    @property
    def acme_prefix(self):
        return "/cluster/acme" if self is TargetKind.VE else "/config/acme"

    @property
    def token_scheme(self):
        return "PVEAPIToken" if self is TargetKind.VE else "PBSAPIToken"

    @property
    def proxy_service(self):
        return "pveproxy" if self is TargetKind.VE else "proxmox-backup-proxy"

    @property
    def services(self):
        if self is TargetKind.VE:
            return ["pveproxy", "pvedaemon"]
        return ["proxmox-backup-proxy", "proxmox-backup"]

    @property
    def cert_path(self):
        if self is TargetKind.VE:
            return "/etc/pve/local/pveproxy-ssl.pem"
        return "/etc/proxmox-backup/proxy.pem"

    @property
    def fallback_cert_path(self):
        """The self-signed certificate served while no custom one is installed."""
        if self is TargetKind.VE:
            return "/etc/pve/local/pve-ssl.pem"
        return None

    @property
    def key_path(self):
        if self is TargetKind.VE:
            return "/etc/pve/local/pveproxy-ssl.key"
        return "/etc/proxmox-backup/proxy.key"

    @property
    def cert_group(self):
        return "www-data" if self is TargetKind.VE else "backup"

    @property
    def default_endpoint(self):
        return f"https://localhost:{self.port}"

    @classmethod
    def parse(cls, value):
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ToolMisuse("Proxmox type must be either 've' or 'pbs'") from None


class PipelineState(enum.Enum):
    START = "Start"
    PROBED = "Probed"
    ACCOUNT_READY = "AccountReady"
    PLUGIN_READY = "PluginReady"
    ORDER_PLACED = "OrderPlaced"
    INSTALLED = "Installed"
    VERIFIED = "Verified"
    VERIFICATION_FAILED = "VerificationFailed"
    ABORTED = "Aborted"


class OrderStatus(enum.Enum):
    PENDING = "pending"
    VALID = "valid"
    FAILED = "failed"


@dataclass(frozen=True)
class ProvisioningRequest:
    domain: str
    contact_email: str
    dns_provider_token: str = field(repr=False)
    target_kind: TargetKind
    management_endpoint: str
    management_credential: str | None = field(default=None, repr=False)
    node: str = ""
    account_name: str = DEFAULT_ACCOUNT_NAME
    plugin_id: str = DEFAULT_PLUGIN_ID
    directory_url: str = LETSENCRYPT_DIRECTORY
    force: bool = True

    @property
    def remote(self):
        return bool(self.management_credential)

    @classmethod
    def build(cls, domain, contact_email, dns_provider_token, target_kind,
              management_endpoint=None, management_credential=None, node=None,
              **options):
        """Validate raw user input and return an immutable request.

        Raises:
            ToolMisuse: if any required value is missing or malformed.
        """
        domain = (domain or "").strip().lower().rstrip(".")
        if not domain:
            raise ToolMisuse("Domain is required")
        if not _DOMAIN_RE.match(domain):
            raise ToolMisuse(f"Invalid domain name: {domain}")

        contact_email = (contact_email or "").strip()
        if not contact_email:
            raise ToolMisuse("Email is required")
        if not _EMAIL_RE.match(contact_email):
            raise ToolMisuse(f"Invalid email address: {contact_email}")

        if not dns_provider_token:
            raise ToolMisuse("Cloudflare token is required")

        if not target_kind:
            raise ToolMisuse("Proxmox type is required")
        if not isinstance(target_kind, TargetKind):
            target_kind = TargetKind.parse(target_kind)

        endpoint = (management_endpoint or target_kind.default_endpoint).rstrip("/")
        parsed = urlparse(endpoint)
        if parsed.scheme != "https" or not parsed.hostname:
            raise ToolMisuse(f"API URL must be an https:// URL: {endpoint}")

        if not node:
            # PBS addresses the local node as "localhost"; VE nodes are named
            # after the host, assumed to be the first label of the domain.
            node = "localhost" if target_kind is TargetKind.PBS else domain.split(".")[0]

        return cls(
            domain=domain,
            contact_email=contact_email,
            dns_provider_token=dns_provider_token,
            target_kind=target_kind,
            management_endpoint=endpoint,
            management_credential=management_credential or None,
            node=node,
            **options,
        )


@dataclass(frozen=True)
class AcmeAccount:
    name: str
    contact: str
    directory_url: str


@dataclass(frozen=True)
class ChallengePlugin:
    id: str
    credential: str = field(repr=False)
    kind: str = "dns"
    provider: str = "cloudflare"
    api: str = CLOUDFLARE_API

    @property
    def data(self):
        return f"CF_Token={self.credential}"


@dataclass
class CertificateOrder:
    domain: str
    plugin_id: str
    account_name: str
    node: str
    task_id: str | None = None
    status: OrderStatus = OrderStatus.PENDING


@dataclass(frozen=True)
class CertificateStatus:
    state: str
    expiry: object = None
    fingerprint: str | None = None
    detail: str | None = None

    ABSENT = "absent"
    PENDING = "pending"
    PRESENT = "present"

    @property
    def present(self):
        return self.state == self.PRESENT

    @classmethod
    def absent(cls, detail=None):
        return cls(cls.ABSENT, detail=detail)

    @classmethod
    def pending(cls, detail=None):
        return cls(cls.PENDING, detail=detail)


@dataclass(frozen=True)
class InstalledCertificate:
    cert_path: str
    key_path: str
    backup_paths: tuple
    owner: str
    mode: int
    expiry: object = None

import logging
import threading
import traceback

from . import verify
from .client import Outcome, build_client, classify, probe
from .errors import IssuanceFailed, ProvisioningError, Unauthorized, ValidationFailed
from .models import (
    LETSENCRYPT_TOS_URL,
    AcmeAccount,
    CertificateOrder,
    ChallengePlugin,
    OrderStatus,
    PipelineState,
)


class Provisioner:
    """Provisions a certificate through Proxmox's built-in ACME support.

    The stages run strictly in order and every mutating one is idempotent,
    so re-running the whole tool is the retry policy:

        Start -> Probed -> AccountReady -> PluginReady -> OrderPlaced
              -> Verified | VerificationFailed

    Any fatal error moves to ``Aborted``. ``run()`` returns the process exit
    code.

    Attributes:
        request: the validated ProvisioningRequest.
        client: the ManagementClient all stages talk to.
        state: the current PipelineState.
        history: every state entered, in order.
        order: the CertificateOrder once placed.
        cancel: threading.Event that interrupts the verification wait.
    """

    def __init__(self, request, client=None, initial_delay=60.0, poll_interval=10.0,
                 max_attempts=12, timeout=None, smoke_test=True):
        self.request = request
        self.client = client if client is not None else build_client(request)
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.smoke_test = smoke_test
        self.cancel = threading.Event()
        self.logger = logging.getLogger("Provisioner")
        self.state = PipelineState.START
        self.history = [PipelineState.START]
        self.order = None
        self.version = None
        self.certificate = None

    def _advance(self, state):
        self.state = state
        self.history.append(state)
        self.logger.debug(f"Pipeline state: {state.value}")

    def check_connection(self):
        """Probe the API and record the server version.

        Returns:
            str: the reported version.
        Raises:
            Unreachable, Unauthorized, UnexpectedResponse: from ``probe``.
        """
        self.logger.info("Checking Proxmox API connection...")
        self.version = probe(self.client)
        self.logger.info(f"Connected to Proxmox version: {self.version}")
        self._advance(PipelineState.PROBED)
        return self.version

    def _tos_url(self):
        result = self.client.terms_of_service(self.request.directory_url)
        if result.ok and isinstance(result.data, str) and result.data:
            return result.data
        self.logger.debug(f"Falling back to default terms of service URL: {result.message}")
        return LETSENCRYPT_TOS_URL

    def _ensure(self, what, result):
        """Apply the shared idempotency policy to a create call.

        Returns:
            bool: True if the object was created, False if it already existed.
        """
        outcome = classify(result)
        if outcome is Outcome.OK:
            return True
        if outcome is Outcome.ALREADY_EXISTS:
            return False
        if outcome is Outcome.UNAUTHORIZED:
            raise Unauthorized(f"Not permitted to configure {what}", result.message)
        raise ValidationFailed(f"Failed to configure {what}", result.message)

    def register_account(self):
        """Create the ACME account, accepting the directory's terms of service.

        An account that already exists under the same name is reused as is.

        Returns:
            AcmeAccount
        Raises:
            Unauthorized: if the token may not modify the ACME configuration.
            ValidationFailed: if the API rejected the account.
        """
        self.logger.info("Registering ACME account...")
        account = AcmeAccount(
            name=self.request.account_name,
            contact=self.request.contact_email,
            directory_url=self.request.directory_url,
        )
        result = self.client.create_account(account, self._tos_url())
        if self._ensure("ACME account", result):
            self.logger.info(f"ACME account '{account.name}' registered successfully")
        else:
            self.logger.info(f"ACME account '{account.name}' already exists")
        self._advance(PipelineState.ACCOUNT_READY)
        return account

    def configure_plugin(self):
        """Create the Cloudflare DNS plugin, or overwrite its credential if it exists.

        Returns:
            ChallengePlugin
        Raises:
            Unauthorized, ValidationFailed: as for ``register_account``.
        """
        self.logger.info("Configuring Cloudflare DNS challenge plugin...")
        plugin = ChallengePlugin(id=self.request.plugin_id, credential=self.request.dns_provider_token)
        result = self.client.create_plugin(plugin)
        if self._ensure("Cloudflare plugin", result):
            self.logger.info(f"Cloudflare plugin '{plugin.id}' configured successfully")
        else:
            self.logger.info(f"Cloudflare plugin '{plugin.id}' already exists, updating credential")
            self._ensure("Cloudflare plugin", self.client.update_plugin(plugin))
        self._advance(PipelineState.PLUGIN_READY)
        return plugin

    def order_certificate(self):
        """Point the node at the account and plugin, then start the order.

        A failure to write the node config is only logged: the node may
        already carry the same settings.

        Returns:
            CertificateOrder: carrying the order task id when the API returned one.
        Raises:
            IssuanceFailed: if the order call itself was rejected.
        """
        request = self.request
        self.logger.info(f"Ordering certificate for {request.domain} on node {request.node}...")
        result = self.client.set_node_config(
            request.node, request.domain, request.account_name, request.plugin_id
        )
        if not result.ok:
            self.logger.warning(
                f"Could not set ACME node config (may already be configured): {result.message}"
            )

        result = self.client.order_certificate(request.node, force=request.force)
        if not result.ok:
            raise IssuanceFailed("Failed to order certificate", result.message)

        self.order = CertificateOrder(
            domain=request.domain,
            plugin_id=request.plugin_id,
            account_name=request.account_name,
            node=request.node,
            task_id=result.data if isinstance(result.data, str) and result.data else None,
        )
        self.logger.info("Certificate order initiated successfully")
        if self.order.task_id:
            self.logger.debug(f"Order task: {self.order.task_id}")
        self._advance(PipelineState.ORDER_PLACED)
        return self.order

    def verify_certificate(self):
        """Wait for the certificate to show up on the node, then smoke test HTTPS.

        Returns:
            CertificateStatus: the ``present`` status.
        Raises:
            IssuanceFailed, VerificationTimeout: after moving to ``VerificationFailed``.
        """
        self.logger.info("Verifying certificate installation...")
        try:
            status = verify.poll_certificate(
                self.client,
                self.order,
                initial_delay=self.initial_delay,
                interval=self.poll_interval,
                max_attempts=self.max_attempts,
                timeout=self.timeout,
                cancel=self.cancel,
            )
        except ProvisioningError:
            self.order.status = OrderStatus.FAILED
            self._advance(PipelineState.VERIFICATION_FAILED)
            raise

        self.order.status = OrderStatus.VALID
        self.certificate = status
        self.logger.info(f"Certificate found for {self.request.domain}")
        self.logger.info(f"Fingerprint: {status.fingerprint or 'unknown'}")
        self.logger.info(f"Expires: {verify.format_expiry(status.expiry)}")

        if self.smoke_test:
            port = self.request.target_kind.port
            verify.https_smoke_test(self.request.domain, port)
            verify.log_served_certificate(self.request.domain, port)
        self._advance(PipelineState.VERIFIED)
        return status

    def run(self):
        """Run every stage in order.

        Returns:
            int: 0 on success, the error's exit code on a ProvisioningError,
            130 when interrupted and 1 on any other error.
        """
        try:
            with self.client:
                self.check_connection()
                self.register_account()
                self.configure_plugin()
                self.order_certificate()
                self.verify_certificate()
            return 0
        except ProvisioningError as e:
            self.logger.error(f"ERROR [{e.kind}]: {e}")
            if self.state is not PipelineState.VERIFICATION_FAILED:
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

from __future__ import annotations

import threading
from typing import Optional

from harmony_core.config import get_settings, reset_settings_cache
from harmony_core.logging import get_logger
from harmony_core.service.auth import AuthOrchestrator
from harmony_core.service.entitlements import EntitlementLedger
from harmony_core.service.federated import AppleIdentityVerifier, GoogleIdentityVerifier
from harmony_core.service.gateway import YooKassaClient
from harmony_core.service.lockout import LockoutGuard, RegistrationRateLimiter
from harmony_core.service.mail import MailService
from harmony_core.service.payments import PaymentReconciler
from harmony_core.service.receipts import AppleReceiptVerifier, GooglePlayVerifier
from harmony_core.service.sessions import SessionManager
from harmony_core.service.tokens import TokenSigner
from harmony_core.storage.memory import MemoryStore
from harmony_core.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.registration_limiter = RegistrationRateLimiter(
            self.settings.registrations_per_ip_per_hour
        )
        self.lockout = LockoutGuard(
            self.store, self.settings, registration_limiter=self.registration_limiter
        )
        self.signer = TokenSigner(self.settings)
        self.sessions = SessionManager(self.store, self.signer, self.settings)
        self.ledger = EntitlementLedger(self.store)

        gateway: Optional[YooKassaClient] = None
        if self.settings.gateway_configured:
            gateway = YooKassaClient(
                self.settings.yookassa_shop_id,
                self.settings.yookassa_secret_key,
                base_url=self.settings.yookassa_api_url,
                timeout=self.settings.payment_gateway_timeout_seconds,
            )
        else:
            logger.warning("payment_gateway_not_configured")

        self.payments = PaymentReconciler(
            self.store,
            self.ledger,
            self.settings,
            gateway=gateway,
            apple=AppleReceiptVerifier(
                self.settings.apple_shared_secret,
                production_url=self.settings.apple_verify_url,
                sandbox_url=self.settings.apple_sandbox_verify_url,
                timeout=self.settings.receipt_verify_timeout_seconds,
            ),
            google=GooglePlayVerifier.from_file(
                self.settings.google_application_credentials,
                self.settings.android_package_name,
                timeout=self.settings.receipt_verify_timeout_seconds,
            ),
        )

        self.mail = MailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=self.settings.verification_code_ttl_minutes,
        )
        self.auth = AuthOrchestrator(
            self.store,
            self.settings,
            lockout=self.lockout,
            sessions=self.sessions,
            ledger=self.ledger,
            mail=self.mail,
            google=GoogleIdentityVerifier(),
            apple=AppleIdentityVerifier(client_id=self.settings.apple_client_id),
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime

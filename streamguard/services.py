"""Service container — every StreamGuard component, wired once at startup.

build_services() is called from the FastAPI lifespan (and directly by tests).
Components receive their collaborators explicitly; nothing here is a
module-level singleton.

Wiring order follows the dependency graph:

  stores → audit trail → rate limiter / flood guard / blocklist
         → moderator → fraud engine → alerts → object storage → key rotation
         → action registry → incident orchestrator
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional

import httpx
from cryptography.fernet import Fernet

from streamguard.alerts import AlertDispatcher
from streamguard.audit.trail import AuditTrail
from streamguard.config import Config
from streamguard.fraud.engine import FraudEngine
from streamguard.fraud.payments import HttpPaymentProcessor, PaymentProcessor, UnavailablePaymentProcessor
from streamguard.identity import HeaderIdentityProvider, IdentityProvider
from streamguard.incidents.actions import build_default_registry
from streamguard.incidents.orchestrator import IncidentOrchestrator
from streamguard.keys.rotation import KeyRotationManager
from streamguard.keys.storage import LocalObjectStorage
from streamguard.moderation.classifier import HttpMediaClassifier, MediaClassifier, UnavailableMediaClassifier
from streamguard.moderation.moderator import ContentModerator
from streamguard.ratelimit.blocklist import Blocklist
from streamguard.ratelimit.limiter import FloodGuard, RateLimitConfig, RateLimiter
from streamguard.stores.factory import create_counter_store, create_document_store
from streamguard.stores.protocol import CounterStore, DocumentStore
from streamguard.utils.clock import Clock, RandomSource, SystemClock, SystemRandomSource
from streamguard.utils.logger import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class SecurityServices:
    config: Config
    clock: Clock
    document_store: DocumentStore
    counter_store: CounterStore
    identity: IdentityProvider
    audit: AuditTrail
    limiter: RateLimiter
    flood_guard: FloodGuard
    blocklist: Blocklist
    moderator: ContentModerator
    fraud: FraudEngine
    alerts: AlertDispatcher
    object_storage: LocalObjectStorage
    keys: KeyRotationManager
    incidents: IncidentOrchestrator
    http_client: httpx.AsyncClient

    async def close(self) -> None:
        await self.http_client.aclose()
        await self.counter_store.close()
        await self.document_store.close()
        logger.info("services_closed")


def _cipher(config: Config) -> Fernet:
    if config.keys.encryption_key:
        return Fernet(config.keys.encryption_key.encode())
    logger.warning(
        "ephemeral_key_encryption_key",
        hint="Set keys.encryption_key or STREAMGUARD_KEY_ENCRYPTION_KEY to keep signing keys across restarts",
    )
    return Fernet(Fernet.generate_key())


def _signing_secret(config: Config) -> bytes:
    if config.object_storage.signing_secret:
        return config.object_storage.signing_secret.encode()
    logger.warning("ephemeral_object_storage_secret")
    return secrets.token_bytes(32)


async def build_services(
    config: Config,
    clock: Optional[Clock] = None,
    random_source: Optional[RandomSource] = None,
    document_store: Optional[DocumentStore] = None,
    counter_store: Optional[CounterStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    media_classifier: Optional[MediaClassifier] = None,
    payment_processor: Optional[PaymentProcessor] = None,
    sleep: Sleep = asyncio.sleep,
) -> SecurityServices:
    """Construct every component from config.

    Explicit collaborators (stores, clock, classifier...) override the ones
    config would create.
    """
    clock = clock or SystemClock()
    random_source = random_source or SystemRandomSource()
    if document_store is None:
        document_store = await create_document_store(config)
    if counter_store is None:
        counter_store = create_counter_store(config, clock=clock)
    http_client = http_client or httpx.AsyncClient(timeout=10.0)

    audit = AuditTrail(document_store, clock=clock, settings=config.audit, sleep=sleep)

    limiter = RateLimiter(
        counter_store, clock=clock, audit=audit, fail_closed=config.rate_limit.fail_closed
    )
    flood_guard = FloodGuard(
        limiter,
        RateLimitConfig(
            window_ms=config.rate_limit.flood_window_ms,
            max_requests=config.rate_limit.flood_max_requests,
        ),
    )
    blocklist = Blocklist(document_store, clock=clock)

    if media_classifier is None:
        media_classifier = (
            HttpMediaClassifier(
                config.moderation.classifier_url,
                timeout_s=config.moderation.classifier_timeout_s,
                client=http_client,
            )
            if config.moderation.classifier_url
            else UnavailableMediaClassifier()
        )
    moderator = ContentModerator(config.moderation, classifier=media_classifier, audit=audit)

    if payment_processor is None:
        payment_processor = (
            HttpPaymentProcessor(
                config.fraud.payment_processor_url,
                timeout_s=config.fraud.payment_processor_timeout_s,
                client=http_client,
            )
            if config.fraud.payment_processor_url
            else UnavailablePaymentProcessor()
        )
    fraud = FraudEngine(
        document_store, clock=clock, payment_processor=payment_processor, audit=audit, sleep=sleep
    )

    alerts = AlertDispatcher(document_store, config.alerts, clock=clock, client=http_client)
    object_storage = LocalObjectStorage(
        config.object_storage.base_url, _signing_secret(config), document_store, clock=clock
    )
    keys = KeyRotationManager(
        document_store,
        object_storage,
        _cipher(config),
        config=config.keys,
        clock=clock,
        random_source=random_source,
        audit=audit,
        alerts=alerts,
    )

    registry = build_default_registry(blocklist, keys, alerts, object_storage, audit)
    incidents = IncidentOrchestrator(document_store, registry, audit, clock=clock, sleep=sleep)

    logger.info(
        "services_ready",
        document_store=type(document_store).__name__,
        counter_store=type(counter_store).__name__,
        media_classifier=type(media_classifier).__name__,
        payment_processor=type(payment_processor).__name__,
        actions=registry.names(),
    )
    return SecurityServices(
        config=config,
        clock=clock,
        document_store=document_store,
        counter_store=counter_store,
        identity=HeaderIdentityProvider(gateway_secret=config.server.gateway_secret),
        audit=audit,
        limiter=limiter,
        flood_guard=flood_guard,
        blocklist=blocklist,
        moderator=moderator,
        fraud=fraud,
        alerts=alerts,
        object_storage=object_storage,
        keys=keys,
        incidents=incidents,
        http_client=http_client,
    )

# portal/routes/deps.py
"""Process-wide service singletons, injected into routes with Depends()."""
from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache

from portal.services import events
from portal.services.auth import get_auth_provider
from portal.services.engagement import IdeaBoard, VoteLedger
from portal.services.fraud_signals import FraudSignalCollector
from portal.services.gcp_clients import get_bucket, get_firestore_client
from portal.services.ledger import CreditLedger
from portal.services.mailer import Mailer
from portal.services.onboarding import Onboarding
from portal.services.sheet_logger import SheetLogger
from portal.services.welcome import WelcomeQueue


@lru_cache(maxsize=1)
def get_bus() -> events.EventBus:
    bus = events.EventBus(executor=ThreadPoolExecutor(max_workers=2, thread_name_prefix="events"))
    SheetLogger().attach(bus)
    return bus


@lru_cache(maxsize=1)
def get_ledger() -> CreditLedger:
    return CreditLedger(get_firestore_client(), get_bus())


@lru_cache(maxsize=1)
def get_collector() -> FraudSignalCollector:
    return FraudSignalCollector(get_firestore_client(), get_bus())


@lru_cache(maxsize=1)
def get_votes() -> VoteLedger:
    return VoteLedger(get_firestore_client(), get_bus())


@lru_cache(maxsize=1)
def get_ideas() -> IdeaBoard:
    return IdeaBoard(get_firestore_client(), get_bucket(), get_bus())


@lru_cache(maxsize=1)
def get_onboarding() -> Onboarding:
    return Onboarding(get_auth_provider(), get_collector(), get_ledger(), Mailer())


@lru_cache(maxsize=1)
def get_welcome() -> WelcomeQueue:
    return WelcomeQueue(get_firestore_client(), Mailer())

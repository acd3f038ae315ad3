from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from ledger.api import create_app
from ledger.config import Settings
from ledger.models import AccountRef, CoinTransactionType
from ledger.service import LedgerService
from ledger.stats import RewardsStatsService
from ledger.storage import InMemoryStorage
from moderation.service import ModerationService
from payouts.service import PayoutService
from redemptions.service import RedemptionService


@pytest.fixture
def settings():
    return Settings(environment="test", log_level="WARNING", seed_data=True)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger(storage):
    return LedgerService(storage)


@pytest.fixture
def moderation(storage):
    return ModerationService(storage)


@pytest.fixture
def redemptions(storage, ledger, moderation, settings):
    return RedemptionService(storage, ledger, moderation, settings)


@pytest.fixture
def payouts(storage, ledger, moderation, settings):
    return PayoutService(storage, ledger, moderation, settings)


@pytest.fixture
def stats(storage):
    return RewardsStatsService(storage)


@pytest.fixture
def fund_student(ledger):
    """Credit a student with earned coins and return the journal entry."""

    def fund(user_id: UUID, amount: int):
        return ledger.credit(AccountRef.user(user_id), amount, CoinTransactionType.EARNED, description="Referral reward")

    return fund


@pytest.fixture
def fund_university(ledger):
    def fund(university_id: UUID, amount: int):
        return ledger.credit(AccountRef.university(university_id), amount, CoinTransactionType.RECEIVED)

    return fund


@pytest.fixture
def client(settings, storage):
    app = create_app(settings=settings, storage=storage)
    with TestClient(app) as test_client:
        yield test_client

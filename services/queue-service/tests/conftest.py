import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from app.core.config import Settings
from app.core.db import Base
from app.models.agent import Agent
from app.models.ticket import Ticket, TicketEvent  # noqa: F401
from app.services.payments import PurchaseResult

# Setup a file-backed SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_queue.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session():
    # Create the tables
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        # Drop the tables after the test
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL=SQLALCHEMY_DATABASE_URL,
        NOTIFICATION_CHANNEL="log",
        AT_API_KEY=None,
        MINUTES_PER_TICKET=2,
        USSD_RATE_LIMIT_SECONDS=0,
    )


@pytest.fixture
def agent(db_session):
    agent = Agent(id="A1", name="John Agent", efficiency=85, skills=["Doctor"])
    db_session.add(agent)
    db_session.commit()
    return agent


class FakePurchases:
    def __init__(self, succeed=True):
        self.succeed = succeed
        self.calls = []

    def buy_airtime(self, phone, amount, recipient):
        self.calls.append(("airtime", phone, amount, recipient))
        if not self.succeed:
            return PurchaseResult(success=False, reason="Insufficient balance")
        return PurchaseResult(success=True, transaction_id="ATQid_123", amount=amount)

    def buy_data(self, phone, bundle_key):
        self.calls.append(("data", phone, bundle_key))
        if not self.succeed:
            return PurchaseResult(success=False, reason="Insufficient balance")
        return PurchaseResult(success=True, transaction_id="ATPid_456", bundle_size="500MB", amount=300)


class RecordingDispatcher:
    channel = "recording"

    def __init__(self):
        self.sent = []

    def send(self, phone, message):
        self.sent.append((phone, message))
        return True


@pytest.fixture
def fake_purchases():
    return FakePurchases()

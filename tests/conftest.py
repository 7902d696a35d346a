"""Shared test fixtures for the clinic booking tests."""
import os
from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pytest

# Set testing environment before the application is imported
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test.db"

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinicbook.main import app
from clinicbook.api.deps import get_authority, get_clock
from clinicbook.core.database import Base, get_db, get_redis
from clinicbook.core.errors import PaymentError
from clinicbook.core.security import UserRole, create_access_token
from clinicbook.models.doctor import Doctor
from clinicbook.models.patient import Patient
from clinicbook.models.user import User
from clinicbook.services.payment_authority import PaymentAuthority, PaymentReceipt

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class FakeAuthority(PaymentAuthority):
    """Records charges and refunds; set ``fail`` to decline everything."""

    def __init__(self):
        self.charges = []
        self.refunds = []
        self.fail = False

    def charge(self, amount, reference, token=None):
        if self.fail:
            raise PaymentError("Payment was declined")
        receipt = PaymentReceipt(transaction_id=f"TXN-{len(self.charges) + 1}", amount=amount)
        self.charges.append((reference, amount, token))
        return receipt

    def refund(self, transaction_id, amount, reference):
        if self.fail:
            raise PaymentError("Payment authority is unavailable")
        receipt = PaymentReceipt(transaction_id=f"RFD-{len(self.refunds) + 1}", amount=amount)
        self.refunds.append((transaction_id, amount, reference))
        return receipt

class Clock:
    """Real time unless pinned with ``set``."""

    def __init__(self):
        self.current = None

    def set(self, value: datetime):
        self.current = value

    def __call__(self) -> datetime:
        return self.current or datetime.now()

def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()

@pytest.fixture(scope="function")
def test_db():
    # Create tables
    Base.metadata.create_all(bind=engine)
    get_redis().flushall()
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db(test_db):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def authority():
    return FakeAuthority()

@pytest.fixture
def clock():
    return Clock()

@pytest.fixture
def client(test_db, authority, clock):
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_authority] = lambda: authority
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()

@pytest.fixture
def visit_day():
    """A weekday a week or more ahead."""
    day = date.today() + timedelta(days=7)
    while day.isoweekday() > 5:
        day += timedelta(days=1)
    return day

def _user(db, email, role):
    user = User(email=email, role=role, is_active=True)
    db.add(user)
    db.flush()
    return user

def _doctor(db, email, first_name, last_name, department, fee):
    user = _user(db, email, UserRole.DOCTOR)
    db.add(Doctor(
        user_id=user.id,
        first_name=first_name,
        last_name=last_name,
        department=department,
        consultation_fee=fee,
        is_available=True,
    ))
    return user

def _patient(db, email, first_name, last_name):
    user = _user(db, email, UserRole.PATIENT)
    db.add(Patient(user_id=user.id, first_name=first_name, last_name=last_name))
    return user

@pytest.fixture
def clinic(db):
    """Two cardiologists, one neurologist, two patients and the back office."""
    people = SimpleNamespace(
        house=_doctor(db, "house@clinic.test", "Gregory", "House", "Cardiology", 1500.0),
        grey=_doctor(db, "grey@clinic.test", "Meredith", "Grey", "Cardiology", 1200.0),
        strange=_doctor(db, "strange@clinic.test", "Stephen", "Strange", "Neurology", None),
        alice=_patient(db, "alice@clinic.test", "Alice", "Moore"),
        bob=_patient(db, "bob@clinic.test", "Bob", "Stone"),
        staff=_user(db, "desk@clinic.test", UserRole.STAFF),
        admin=_user(db, "admin@clinic.test", UserRole.ADMIN),
        manager=_user(db, "manager@clinic.test", UserRole.MANAGER),
    )
    db.commit()
    for user in vars(people).values():
        db.refresh(user)
    return people

def auth_headers(user):
    token = create_access_token({"sub": user.id, "email": user.email, "role": user.role.value})
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture
def headers():
    return auth_headers

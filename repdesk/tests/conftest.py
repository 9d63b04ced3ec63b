import os
import tempfile

# Settings are read at import time, so the test environment goes in first
_db_dir = tempfile.mkdtemp(prefix="repdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["META_APP_SECRET"] = "test-app-secret"
os.environ["META_WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ["META_WEBHOOK_DEBUG_CAPTURE"] = "false"
os.environ["OPENAI_API_KEY"] = "sk-test"
os.environ["ADMIN_API_KEY"] = ""
os.environ["AXIOM_TOKEN"] = ""

import pytest
from fastapi.testclient import TestClient

from repdesk.db import engine, SessionLocal
from repdesk.main import app
from repdesk.models import Base, Org, User, OrgMember, BusinessLocation, InstagramConnection, ConnectedAccount
from repdesk.security.auth import create_access_token, get_password_hash
from repdesk.tests.factories import IG_ACCOUNT_ID

@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def client():
    return TestClient(app)

@pytest.fixture
def org(db):
    org = Org(name="Harbor Dental Group")
    db.add(org)
    db.commit()
    return org

@pytest.fixture
def user(db, org):
    user = User(email="owner@harbordental.test", name="Dana Owner", password_hash=get_password_hash("s3cret-pass"), is_active=True)
    db.add(user)
    db.flush()
    db.add(OrgMember(org_id=org.id, user_id=user.id, role="owner"))
    db.commit()
    return user

@pytest.fixture
def auth_headers(user):
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture
def location(db, org):
    location = BusinessLocation(
        org_id=org.id,
        name="Harbor Dental",
        primary_category="Dentist",
        city="Detroit",
        phone="(313) 555-0100",
        website="https://harbordental.test",
        service_highlights=["Same-day crowns", "Emergency visits"],
        google_location_name="accounts/111/locations/222",
    )
    db.add(location)
    db.commit()
    return location

@pytest.fixture
def other_location(db):
    other = Org(name="Someone Else")
    db.add(other)
    db.flush()
    location = BusinessLocation(org_id=other.id, name="Not Yours")
    db.add(location)
    db.commit()
    return location

@pytest.fixture
def ig_connection(db, location):
    connection = InstagramConnection(
        business_location_id=location.id,
        instagram_user_id=IG_ACCOUNT_ID,
        instagram_username="harbordental",
        access_token="IGAA-test-token",
    )
    db.add(connection)
    db.commit()
    return connection

@pytest.fixture
def gbp_account(db, location):
    account = ConnectedAccount(
        business_location_id=location.id,
        provider="google_gbp",
        status="connected",
        account_name="accounts/111",
        access_token="ya29.test",
        refresh_token="1//refresh",
    )
    db.add(account)
    db.commit()
    return account

"""
Pytest configuration and fixtures.
Points the app at an isolated SQLite file before the package is imported.
"""

import os
import tempfile
from datetime import datetime

import pytest

TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "lab_reservations_test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["SMTP_HOST"] = ""
os.environ["STRICT_TRANSITIONS"] = "false"

from lab_reservations.auth import User, create_access_token, pwd_context  # noqa: E402
from lab_reservations.broadcast import BroadcastRegistry  # noqa: E402
from lab_reservations.database import database, engine, metadata  # noqa: E402
from lab_reservations.models import equipment, team_members, teams, users  # noqa: E402
from lab_reservations.notifications import NotificationDispatcher  # noqa: E402


class RecordingEmailSender:
    """Collects outgoing mail instead of talking to SMTP."""

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send(self, to, subject, text):
        if self.fail:
            raise ConnectionRefusedError("SMTP server unreachable")
        self.sent.append({"to": to, "subject": subject, "text": text})
        return True


@pytest.fixture(scope="session", autouse=True)
def cleanup_test_database():
    yield
    if os.path.exists(TEST_DB_PATH):
        try:
            os.remove(TEST_DB_PATH)
        except PermissionError:
            pass


@pytest.fixture
def fresh_schema():
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)
    yield
    metadata.drop_all(bind=engine)


@pytest.fixture
async def db(fresh_schema):
    await database.connect()
    yield database
    await database.disconnect()


async def add_user(username, role="USER", email=None):
    user_id = await database.execute(users.insert().values(
        username=username,
        full_name=username.title(),
        email=email or f"{username}@lab.local",
        hashed_password=pwd_context.hash("secret"),
        role=role,
        disabled=False,
    ))
    return User(id=user_id, username=username, full_name=username.title(),
                email=email or f"{username}@lab.local", role=role)


async def add_equipment(name="Spectrometer", status="AVAILABLE", availability=True):
    return await database.execute(equipment.insert().values(
        name=name, description=None, location="Lab 1",
        availability=availability, status=status, created_at=datetime(2025, 1, 1),
    ))


async def add_team(name, leader, members=()):
    team_id = await database.execute(teams.insert().values(team_name=name, leader_id=leader.id))
    for member in members:
        await database.execute(team_members.insert().values(team_id=team_id, user_id=member.id, role="MEMBER"))
    return team_id


def bearer(user):
    token = create_access_token(data={"sub": user.username})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def admin(db):
    return await add_user("admin", role="ADMIN")


@pytest.fixture
async def researcher(db):
    return await add_user("researcher")


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def registry():
    return BroadcastRegistry()


@pytest.fixture
def dispatcher(db, email_sender):
    return NotificationDispatcher(db, email_sender=email_sender)

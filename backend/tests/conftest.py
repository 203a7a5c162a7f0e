"""
Test fixtures for StaffHub venue-scoping tests.

Tests run in-process against an in-memory SQLite database (aiosqlite) shared
through a StaticPool.  Every test gets a fresh schema and the same seeded
"world" of venues and users:

    venues:  north (active), south (active), closed (inactive)

    admin          ADMIN    north
    mgr_north      MANAGER  north
    mgr_south      MANAGER  south
    staff_north    STAFF    north
    staff_both     STAFF    north + south
    staff_south    STAFF    south
    staff_closed   STAFF    closed          (no active venue)
    gone_north     STAFF    north           (deactivated)
"""
import os
import tempfile

# Settings are read at import time; point them at test resources first.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUDIT_SINK_ENABLED"] = "false"
os.environ["AUDIT_STORAGE_PATH"] = tempfile.mkdtemp(prefix="staffhub-audit-")
os.environ.setdefault("JWT_SECRET", "test-secret")

import dataclasses
import uuid

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import staffhub.models  # noqa: F401  (registers every table on Base.metadata)
from staffhub.database import Base, get_db
from staffhub.identity import Actor, actor_from_user
from staffhub.middleware.auth import create_access_token, hash_password
from staffhub.models import (
    Channel,
    ChannelMember,
    ChannelVenue,
    Conversation,
    ConversationParticipant,
    Message,
    Permission,
    User,
    UserVenue,
    Venue,
)
from staffhub.models.messaging import ONE_ON_ONE
from staffhub.services.permission_catalog import sync_permission_catalog

PASSWORD = "secret123"
# Hashing is slow; every seeded user shares one hash.
PASSWORD_HASH = hash_password(PASSWORD)


# ---------------------------------------------------------------------------
# Seeded world
# ---------------------------------------------------------------------------

USER_LAYOUT = {
    # name: (role, venue codes, is_active)
    "admin": ("ADMIN", ["north"], True),
    "mgr_north": ("MANAGER", ["north"], True),
    "mgr_south": ("MANAGER", ["south"], True),
    "staff_north": ("STAFF", ["north"], True),
    "staff_both": ("STAFF", ["north", "south"], True),
    "staff_south": ("STAFF", ["south"], True),
    "staff_closed": ("STAFF", ["closed"], True),
    "gone_north": ("STAFF", ["north"], False),
}


@dataclasses.dataclass
class World:
    users: dict[str, User]
    venues: dict[str, Venue]
    permissions: dict[str, uuid.UUID]

    def actor(self, name: str) -> Actor:
        return actor_from_user(self.users[name])

    def uid(self, name: str) -> uuid.UUID:
        return self.users[name].id

    def vid(self, code: str) -> uuid.UUID:
        return self.venues[code].id


async def seed_world(db: AsyncSession) -> World:
    venues = {
        "north": Venue(code="north", name="North Bar"),
        "south": Venue(code="south", name="South Kitchen"),
        "closed": Venue(code="closed", name="Old Depot", is_active=False),
    }
    db.add_all(venues.values())

    users: dict[str, User] = {}
    for name, (role, codes, active) in USER_LAYOUT.items():
        user = User(
            email=f"{name}@staffhub.test",
            password_hash=PASSWORD_HASH,
            display_name=name.replace("_", " ").title(),
            role=role,
            is_active=active,
        )
        users[name] = user
        db.add(user)
    await db.flush()

    for name, (_, codes, _) in USER_LAYOUT.items():
        for i, code in enumerate(codes):
            db.add(UserVenue(
                user_id=users[name].id, venue_id=venues[code].id, is_primary=i == 0
            ))
    await db.commit()

    await sync_permission_catalog(db)
    rows = (await db.execute(select(Permission))).scalars().all()
    permissions = {p.key: p.id for p in rows}
    return World(users=users, venues=venues, permissions=permissions)


async def make_channel(
    db: AsyncSession,
    world: World,
    name: str,
    venues: list[str],
    members: dict[str, str] | None = None,
    archived: bool = False,
) -> Channel:
    """Insert a channel directly; *members* maps user name → channel role."""
    channel = Channel(name=name, archived=archived)
    db.add(channel)
    await db.flush()
    for code in venues:
        db.add(ChannelVenue(channel_id=channel.id, venue_id=world.vid(code)))
    for user_name, role in (members or {}).items():
        db.add(ChannelMember(channel_id=channel.id, user_id=world.uid(user_name), role=role))
    await db.commit()
    return channel


async def make_direct_conversation(
    db: AsyncSession, world: World, a: str, b: str, *messages: tuple[str, str]
) -> Conversation:
    """Insert a one-on-one conversation with optional ``(sender, text)`` messages."""
    conversation = Conversation(conversation_type=ONE_ON_ONE, created_by=world.uid(a))
    db.add(conversation)
    await db.flush()
    for name in (a, b):
        db.add(ConversationParticipant(conversation_id=conversation.id, user_id=world.uid(name)))
    for sender, text in messages:
        db.add(Message(conversation_id=conversation.id, sender_id=world.uid(sender), content=text))
    await db.commit()
    return conversation


def auth_headers(user: User) -> dict:
    """Return auth header dict for a seeded user."""
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def world(db):
    """The seeded venues, users and permission catalog."""
    return await seed_world(db)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory):
    """In-process client for the FastAPI app, bound to the test database."""
    from staffhub.main import app

    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def headers(world):
    """``headers("staff_north")`` → bearer headers for that seeded user."""
    def _headers(name: str) -> dict:
        return auth_headers(world.users[name])
    return _headers

"""
Pytest configuration for backend tests.

Adds the backend directory to Python path so imports like
'from mcpchat.xxx import ...' work correctly, and points the
application at an in-memory database before anything imports it.
"""
import os
import sys
from pathlib import Path

import pytest_asyncio

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")

# Add backend directory to path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory store with tables and the default admin user."""
    from mcpchat.services.database import create_engine, init_db
    from mcpchat.services.store import ChatStore

    chat_store = ChatStore(create_engine("sqlite+aiosqlite:///:memory:"))
    await init_db(chat_store.engine, admin_password="secret")
    yield chat_store
    await chat_store.close()


@pytest_asyncio.fixture
async def conversation(store):
    admin = await store.get_user_by_name("admin")
    return await store.create_conversation(admin.id, title="Test")

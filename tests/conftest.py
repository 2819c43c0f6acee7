"""Pytest configuration and fixtures for the token broker tests."""

import sys
from pathlib import Path

import keyring
import pytest

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir.parent / "src"
sys.path.insert(0, str(src_dir))

from oauth import OAuthManager
from test_utils import FakeLoginProvider, MemoryKeyring, make_conf


@pytest.fixture(autouse=True)
def memory_keyring():
    """Route every secret store call to an in-memory backend."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def conf():
    return make_conf()


@pytest.fixture
def login_provider() -> FakeLoginProvider:
    return FakeLoginProvider()


@pytest.fixture
def oauth_manager(login_provider) -> OAuthManager:
    return OAuthManager(login_provider=login_provider, logon_timeout=1.0)

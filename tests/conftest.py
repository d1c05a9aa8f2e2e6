import os

os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("CHAT_SHARED_SECRET", "test-shared-secret")

import pytest

from healio_chat.crypto_utils import SharedKeyCipher
from healio_chat.memory import MemoryConversationStore


@pytest.fixture
def cipher():
    return SharedKeyCipher("test-shared-secret")


@pytest.fixture
def store():
    """Fresh in-process store for each test."""
    return MemoryConversationStore()


@pytest.fixture
def alice():
    return {"_id": "u1", "name": "Alice", "role": "Youth"}

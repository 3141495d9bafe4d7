import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from company_intel.credential_store import InMemoryCredentialStore
from company_intel.encryption import ConfigCipher
from company_intel.store import InMemoryStore

TEST_ENCRYPTION_KEY = "0f" * 32


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, *, text: str = "", reason: str = "OK"):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.reason = reason

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """Records calls and answers from a queue of canned responses (or exceptions)."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls: list[tuple[str, str, dict]] = []

    def _next(self, method: str, url: str, kwargs: dict):
        self.calls.append((method, url, kwargs))
        if not self.responses:
            raise AssertionError(f"unexpected {method} {url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def request(self, method, url, **kwargs):
        return self._next(method, url, kwargs)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "INTEL_STORE_BACKEND",
        "INTEL_QUEUE_BACKEND",
        "LLM_PROVIDER",
        "LLM_MODEL",
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GEMINI_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INTEL_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    yield


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def cipher() -> ConfigCipher:
    return ConfigCipher(TEST_ENCRYPTION_KEY)


@pytest.fixture
def credentials(cipher: ConfigCipher) -> InMemoryCredentialStore:
    return InMemoryCredentialStore(cipher=cipher)

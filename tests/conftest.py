import pathlib
import sys
from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reportstore.analyzer import MockReportAnalyzer
from reportstore.main import create_app
from reportstore.object_storage import InMemoryObjectStorage
from reportstore.record_store import AnalysisRecordStore

JWT_SECRET = "jwt_test_secret"
CRON_SECRET = "cron_test_secret"
FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


def issue_token(*, user_id: str, role: str = "user", secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": f"sub_{user_id}",
        "user_id": user_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class AuthenticatedClient:
    """Mints a bearer token from ``x-user-id``/``x-role`` test headers."""

    def __init__(self, client: TestClient):
        self._client = client

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            user_id = headers.pop("x-user-id", None) or "1"
            role = headers.pop("x-role", None) or "user"
            headers["Authorization"] = f"Bearer {issue_token(user_id=str(user_id), role=str(role))}"
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def security_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("REPORTSTORE_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "user_id,sub,exp")
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.delenv("REPORTSTORE_STALE_MINUTES", raising=False)
    monkeypatch.delenv("REPORTSTORE_CLEAN_DEFAULT_MINUTES", raising=False)
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(FIXED_NOW)


@pytest.fixture
def storage(clock: FakeClock) -> InMemoryObjectStorage:
    return InMemoryObjectStorage(clock=clock)


@pytest.fixture
def store(storage: InMemoryObjectStorage, clock: FakeClock) -> AnalysisRecordStore:
    return AnalysisRecordStore(storage=storage, clock=clock)


@pytest.fixture
def client(store: AnalysisRecordStore) -> AuthenticatedClient:
    app = create_app(record_store=store, analyzer=MockReportAnalyzer())
    return AuthenticatedClient(TestClient(app))

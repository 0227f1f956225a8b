from __future__ import annotations

import pytest
import httpx
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from database import get_session
from lifecycle.api import ServiceClient
from main import app
from models import User, UserRole
from services.auth import hash_password

TEST_ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
BASE_URL = "http://testserver"


def _override_get_session():
    with Session(TEST_ENGINE) as session:
        yield session


class CountingTransport(httpx.AsyncBaseTransport):
    """Forwards to the app and remembers every request it saw."""

    def __init__(self, inner: httpx.AsyncBaseTransport):
        self.inner = inner
        self.requests: list[tuple[str, str]] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        return await self.inner.handle_async_request(request)

    def since(self, mark: int) -> list[tuple[str, str]]:
        return self.requests[mark:]


@pytest.fixture(autouse=True)
def reset_db():
    SQLModel.metadata.drop_all(TEST_ENGINE)
    SQLModel.metadata.create_all(TEST_ENGINE)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db_session():
    with Session(TEST_ENGINE) as session:
        yield session


@pytest.fixture
def client():
    app.dependency_overrides[get_session] = _override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded_users():
    users = {
        "receptionist": {
            "username": "reception",
            "name": "Front Desk",
            "password": "reception123",
            "role": UserRole.RECEPTIONIST,
        },
        "doctor": {
            "username": "doctor",
            "name": "Doctor",
            "password": "doctor123",
            "role": UserRole.DOCTOR,
        },
        "nurse": {
            "username": "nurse",
            "name": "Nurse",
            "password": "nurse123",
            "role": UserRole.NURSE,
        },
        "admin": {
            "username": "admin",
            "name": "Admin",
            "password": "admin123",
            "role": UserRole.ADMIN,
        },
    }

    with Session(TEST_ENGINE) as session:
        for spec in users.values():
            session.add(
                User(
                    username=spec["username"],
                    name=spec["name"],
                    password_hash=hash_password(spec["password"]),
                    role=spec["role"],
                )
            )
        session.commit()

    return users


def _login(client: TestClient, username: str, password: str) -> dict[str, str]:
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def receptionist_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["receptionist"]["username"], seeded_users["receptionist"]["password"])


@pytest.fixture
def doctor_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["doctor"]["username"], seeded_users["doctor"]["password"])


@pytest.fixture
def nurse_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["nurse"]["username"], seeded_users["nurse"]["password"])


@pytest.fixture
def admin_headers(client: TestClient, seeded_users):
    return _login(client, seeded_users["admin"]["username"], seeded_users["admin"]["password"])


@pytest.fixture
def appointment_payload():
    return {
        "patient_id": "PAT0001",
        "doctor_id": "DOC0001",
        "appointment_date": "2026-11-02",
        "start_time": "09:30:00",
        "duration_minutes": 30,
        "type": "GENERAL_CONSULTATION",
        "reason": "Persistent cough",
    }


@pytest.fixture
def appointment_id(client: TestClient, receptionist_headers, appointment_payload):
    response = client.post("/appointments", headers=receptionist_headers, json=appointment_payload)
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture
def counting_transport():
    return lambda: CountingTransport(httpx.ASGITransport(app=app))


@pytest.fixture
async def service_clients(seeded_users):
    """Factory for logged-in ServiceClients talking to the app in-process.

    ``transport`` wraps the app transport, so tests can count or break
    requests; it defaults to a fresh CountingTransport.
    """
    app.dependency_overrides[get_session] = _override_get_session
    opened: list[httpx.AsyncClient] = []

    async def _make(role_key: str, transport: httpx.AsyncBaseTransport | None = None) -> ServiceClient:
        http = httpx.AsyncClient(
            transport=transport or CountingTransport(httpx.ASGITransport(app=app)),
            base_url=BASE_URL,
        )
        opened.append(http)
        service = ServiceClient(http)
        user = seeded_users[role_key]
        await service.login(user["username"], user["password"])
        return service

    yield _make

    for http in opened:
        await http.aclose()
    app.dependency_overrides.clear()

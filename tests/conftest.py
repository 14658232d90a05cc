from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from securevote import elections as registry
from securevote.config import Settings
from securevote.database import make_engine, make_session_factory, init_db
from securevote.engine import EngineGateway, PaillierEngine
from securevote.keyholder import KeyHolder
from securevote.main import create_app
from securevote.models import utcnow
from securevote.tokens import TokenRegistry


TEST_KEY_SIZE = 512
ADMIN_PASSWORD = "correct horse battery staple"

CANDIDATES = [{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob"}]


@pytest.fixture(scope="session")
def paillier():
    return PaillierEngine(TEST_KEY_SIZE)


@pytest.fixture(scope="session")
def key_bundle(paillier):
    return paillier.generate_key_bundle()


@pytest.fixture
def gateway(paillier):
    gw = EngineGateway(paillier, timeout=30)
    yield gw
    gw.shutdown()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def tokens():
    return TokenRegistry(b"\x01" * 32)


@pytest.fixture
def key_holder(tmp_path, gateway, session_factory):
    def publish_locally(election_id, server_key):
        with session_factory() as session:
            registry.publish_evaluation_key(session, election_id, server_key, utcnow(), scheme=gateway.scheme)

    return KeyHolder(str(tmp_path / "keystore"), gateway, publish_locally)


@pytest.fixture
def make_election(db, key_holder):
    """Create an election around the current time and publish its key."""

    def factory(candidates=CANDIDATES, starts_in=timedelta(hours=-1), lasts=timedelta(hours=2), provision=True):
        start = utcnow() + starts_in
        election_id = registry.create_election(db, "E1", start, start + lasts, candidates)
        if provision:
            key_holder.provision(election_id)
        db.expire_all()
        return election_id

    return factory


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        secrets_dir=str(tmp_path / "secrets"),
        keystore_dir=str(tmp_path / "keys"),
        certs_dir=str(tmp_path / "certs"),
        admin_password=ADMIN_PASSWORD,
        engine_key_size=TEST_KEY_SIZE,
        log_level="WARNING",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers(client):
    res = client.post("/auth/admin/login", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['access_token']}"}

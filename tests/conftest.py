import pytest
import sqlalchemy
from flask_security import hash_password

from ots_federation.app import create_app
from ots_federation.extensions import db, logger
from tests.helpers import TCPListener, self_signed_certificate, issue_certificate, certificate_pem, private_key_pem


class AuthActions:
    def __init__(self, app, client, username="TestUser", password="TestPass"):
        self.app = app
        self.client = client
        self.username = username
        self.password = password
        self.headers = {"Accept": "application/json"}
        self.create()
        self.login()

    def create(self):
        try:
            with self.client.application.app_context():
                self.app.security.datastore.create_user(
                    username=self.username,
                    password=hash_password(self.password),
                    roles=["administrator"],
                )
                db.session.commit()
        except sqlalchemy.exc.IntegrityError:
            logger.warning("{} already exists".format(self.username))

    def login(self):
        response = self.client.post(
            "/api/login", json={"username": self.username, "password": self.password}, headers=self.headers
        )
        assert response.status_code == 200, response.json
        return response

    def logout(self):
        return self.client.get("/api/logout")

    def get(self, path, headers=None):
        if headers is None:
            headers = self.headers
        return self.client.get(path, headers=headers)

    def post(self, path, headers=None, json=None, data=None):
        if headers is None:
            headers = self.headers
        return self.client.post(path, headers=headers, json=json, data=data)

    def put(self, path, headers=None, json=None):
        if headers is None:
            headers = self.headers
        return self.client.put(path, headers=headers, json=json)

    def delete(self, path, headers=None):
        if headers is None:
            headers = self.headers
        return self.client.delete(path, headers=headers)


@pytest.fixture
def app(tmp_path):
    app = create_app(cli=False, config={
        "TESTING": True,
        "PRESERVE_CONTEXT_ON_EXCEPTION": False,
        "OTS_DATA_FOLDER": str(tmp_path),
        "OTS_FEDERATION_CREDENTIALS_FOLDER": str(tmp_path / "federation"),
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'ots_federation.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 15}},
        "WTF_CSRF_ENABLED": False,
        "SECURITY_PASSWORD_HASH": "pbkdf2_sha512",
        "OTS_NODE_ID": "test-node",
        "OTS_FEDERATION_CONSUME_RABBITMQ": False,
        "OTS_FEDERATION_RECONCILE_INTERVAL": 0.2,
        "OTS_FEDERATION_CONNECT_TIMEOUT": 2,
        "OTS_FEDERATION_WRITE_TIMEOUT": 2,
        "OTS_FEDERATION_HEARTBEAT_INTERVAL": 30,
        "OTS_FEDERATION_HEARTBEAT_TIMEOUT": 0,
        "OTS_FEDERATION_BACKOFF_BASE": 0.1,
        "OTS_FEDERATION_BACKOFF_CAP": 0.4,
        "OTS_FEDERATION_STOP_GRACE": 2,
    })
    yield app
    app.federation_supervisor.stop()


@pytest.fixture()
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def auth(app, client):
    return AuthActions(app, client)


@pytest.fixture
def listener():
    listener = TCPListener()
    yield listener
    listener.close()


@pytest.fixture
def supervisor(app):
    app.federation_supervisor.start()
    return app.federation_supervisor


@pytest.fixture(scope="session")
def certificate_and_key():
    return self_signed_certificate()


@pytest.fixture
def ca_pem(certificate_and_key):
    return certificate_pem(certificate_and_key[0])


@pytest.fixture
def key_pem(certificate_and_key):
    return private_key_pem(certificate_and_key[1])


@pytest.fixture(scope="session")
def server_certificate_and_key(certificate_and_key):
    """A peer certificate for 127.0.0.1 signed by the test CA"""
    return issue_certificate(*certificate_and_key, "ots-peer")


@pytest.fixture(scope="session")
def client_certificate_and_key(certificate_and_key):
    return issue_certificate(*certificate_and_key, "ots-federation-client", hosts=("ots-federation-client",),
                             client=True)


@pytest.fixture
def make_listener():
    """Build listeners with custom TLS settings, all closed after the test"""
    listeners = []

    def make(ssl_context=None):
        listener = TCPListener(ssl_context=ssl_context)
        listeners.append(listener)
        return listener

    yield make
    for listener in listeners:
        listener.close()

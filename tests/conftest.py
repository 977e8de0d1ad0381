import pytest

from app import create_app
from authenticator import SoftwareAuthenticator
from rp_policy import RpPolicy, ServerSettings
from server import PasskeyServer
from tests.helpers import ORIGIN, OTHER_ORIGIN


@pytest.fixture
def policy():
    return RpPolicy(rp_id="localhost", rp_name="Test RP", origins=(ORIGIN, OTHER_ORIGIN))


@pytest.fixture
def server(policy):
    return PasskeyServer(policy)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def client(server):
    app = create_app(server, ServerSettings(debug_endpoints=True))
    app.config["TESTING"] = True
    return app.test_client()

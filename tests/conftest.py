import pytest

from drainsafe.metadata import MetadataClient
from drainsafe.nodestate import NodeStateStore

from fakes import FakeExecutor, FakeKube, FakeSession


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def store(kube):
    return NodeStateStore(kube, "drainsafe-abc on dummyhostname")


@pytest.fixture
def executor(kube):
    return FakeExecutor(kube)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def metadata(session):
    return MetadataClient("http://169.254.169.254/metadata", session=session)

import pytest

import mutate
from exc import PublishError
from policy import OwnershipPolicy


BROKERS = {
    ("heimdall", "heimdall-kafka-cluster"): ["10.96.0.10:9092"],
}


class FakeProvider:
    def __init__(self, port=9092, timeout=None):
        self.port = port
        self.timeout = timeout

    def brokers(self, namespace, cluster_name):
        return BROKERS.get((namespace, cluster_name), [])


class FakePublisher:
    """Records every identity it is asked to publish."""

    def __init__(self, directory=None, fail_with=None, **kwargs):
        self.directory = directory
        self.fail_with = fail_with
        self.published = []

    def publish(self, identity):
        self.published.append(identity)
        if self.fail_with:
            raise PublishError(self.fail_with)


@pytest.fixture()
def fake_publisher():
    return FakePublisher()


@pytest.fixture()
def policy(fake_publisher):
    return OwnershipPolicy(
        fake_publisher,
        owner_label="app.heimdall.io/owner",
        priority_label="app.heimdall.io/priority",
    )


@pytest.fixture()
def app():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        PUBLISHER=FakePublisher,
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def published(app):
    return app.policy.publisher.published

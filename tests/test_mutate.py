import base64
import json

import pytest

import mutate
from models import PatchAction

from conftest import FakeProvider, FakePublisher

OWNER = "10.0.0.5"
OTHER = "10.0.0.9"


def deployment(replicas=1, **labels):
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": "web",
            "labels": {"app.heimdall.io/owner": OWNER, **labels},
        },
        "spec": {"replicas": replicas},
    }


def review(old, new, namespace="default", api_version="admission.k8s.io/v1"):
    return {
        "apiVersion": api_version,
        "kind": "AdmissionReview",
        "request": {
            "uid": "1234",
            "kind": {"group": "apps", "version": "v1", "kind": "Deployment"},
            "name": "web",
            "namespace": namespace,
            "operation": "UPDATE",
            "oldObject": old,
            "object": new,
        },
    }


def post(client, body, remote_addr=OTHER):
    return client.post(
        "/mutate",
        headers={"content-type": "application/json"},
        json=body,
        environ_base={"REMOTE_ADDR": remote_addr},
    )


def test_invalid_path(client):
    """We expect a 404 response for invalid paths"""
    res = client.get("/test-path")
    assert res.status_code == 404


def test_invalid_method(client):
    """We expect a 405 ("method not allowed") response if we GET /mutate
    instead of POST"""
    res = client.get("/mutate")
    assert res.status_code == 405


def test_invalid_media_type(client, published):
    """We expect a 400 response if our request does not have content-type
    "application/json"."""
    res = client.post(
        "/mutate",
        headers={"content-type": "text/plain"},
        data=json.dumps(review(deployment(), deployment(replicas=2))),
    )
    assert res.status_code == 400
    assert "unsupported content type" in res.text
    assert published == []


def test_health(client):
    """We expect a 200 response from the /healthz endpoint"""
    res = client.get("/healthz")
    assert res.status_code == 200


def test_not_json(client):
    """We expect a 400 ("bad request") response if we submit something that is not
    actually JSON data"""
    res = client.post(
        "/mutate",
        headers={"content-type": "application/json"},
        data="Ceci n'est pas JSON",
    )
    assert res.status_code == 400


def test_missing_request(client):
    """An envelope without a request is malformed."""
    res = post(client, {"apiVersion": "admission.k8s.io/v1", "kind": "AdmissionReview"})
    assert res.status_code == 400
    assert "request is nil" in res.text


def test_empty_uid(client):
    body = review(deployment(), deployment())
    body["request"]["uid"] = ""
    res = post(client, body)
    assert res.status_code == 400


def test_reserved_namespace_is_allowed(app, client, published):
    def decide(req, requester, owner):
        raise AssertionError("policy engine must not run for reserved namespaces")

    app.policy.decide = decide
    res = post(client, review(deployment(), deployment(replicas=5), namespace="kube-system"))

    assert res.status_code == 200
    assert res.json == {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "response": {"allowed": True, "uid": "1234"},
    }
    assert published == []


def test_reserved_namespaces_are_configurable():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        PUBLISHER=FakePublisher,
        TESTING=True,
        RESERVED_NAMESPACES="platform",
    )
    res = post(app.test_client(), review(deployment(), deployment(replicas=5), namespace="platform"))
    assert res.json["response"]["allowed"]
    assert app.policy.publisher.published == []


def test_identical_objects_are_allowed(client, published):
    res = post(client, review(deployment(), deployment()))

    assert res.status_code == 200
    assert res.json["response"] == {"allowed": True, "uid": "1234"}
    assert published == []


def test_owner_may_change_spec(client, published):
    res = post(client, review(deployment(), deployment(replicas=3)), remote_addr=OWNER)

    assert res.status_code == 200
    assert res.json["response"]["allowed"]
    assert "patch" not in res.json["response"]
    assert published == []


def test_non_owner_spec_change_is_denied(client, published):
    """A denial is a decision, so it still comes back as a 200."""
    res = post(client, review(deployment(), deployment(replicas=3)))

    assert res.status_code == 200
    response = res.json["response"]
    assert response["uid"] == "1234"
    assert not response["allowed"]
    assert OTHER in response["status"]["message"]
    assert "spec" in response["status"]["message"]
    assert "patch" not in response
    assert "patchType" not in response
    assert len(published) == 1


def test_non_owner_priority_label_change_is_allowed(client, published):
    res = post(
        client,
        review(deployment(), deployment(**{"app.heimdall.io/priority": "high"})),
    )

    assert res.status_code == 200
    assert res.json["response"] == {"allowed": True, "uid": "1234"}
    assert published == []


def test_non_owner_label_change_is_denied(client, published):
    res = post(client, review(deployment(), deployment(team="red")))

    assert res.status_code == 200
    assert not res.json["response"]["allowed"]
    assert "(team: red)" in res.json["response"]["status"]["message"]
    assert len(published) == 1


def test_publish_failure_still_denies():
    class BrokenPublisher(FakePublisher):
        def __init__(self, directory=None, **kwargs):
            super().__init__(directory, fail_with="kafka is down")

    app = mutate.create_app(
        PROVIDER=FakeProvider,
        PUBLISHER=BrokenPublisher,
        TESTING=True,
    )
    res = post(app.test_client(), review(deployment(), deployment(replicas=3)))

    assert res.status_code == 200
    assert not res.json["response"]["allowed"]
    assert "kafka is down" in res.json["response"]["status"]["message"]


def test_requester_port_is_ignored(client, published):
    res = post(client, review(deployment(), deployment(replicas=3)), remote_addr=f"{OWNER}:51234")
    assert res.json["response"]["allowed"]


def test_decode_error_is_denied(client, published):
    res = post(client, review(None, deployment()))

    assert res.status_code == 200
    assert not res.json["response"]["allowed"]
    assert "failed decoding existing object" in res.json["response"]["status"]["message"]
    assert published == []


def test_v1beta1_api_version_is_echoed(client):
    res = post(
        client,
        review(deployment(), deployment(), api_version="admission.k8s.io/v1beta1"),
    )
    assert res.json["apiVersion"] == "admission.k8s.io/v1beta1"


def test_patch_is_returned_when_policy_mutates(app, client):
    expected_patch = [
        {
            "op": "add",
            "path": "/metadata/labels/app.heimdall.io~1priority",
            "value": "low",
        }
    ]
    app.policy.decide = lambda req, requester, owner: [
        PatchAction(**op) for op in expected_patch
    ]
    res = post(client, review(deployment(), deployment()))

    assert res.status_code == 200
    assert res.json["response"]["allowed"]
    assert res.json["response"]["patchType"] == "JSONPatch"
    have_patch = json.loads(base64.b64decode(res.json["response"]["patch"]))
    assert have_patch == expected_patch


@pytest.mark.parametrize(
    "remote_addr,expected",
    [
        ("10.0.0.5", "10.0.0.5"),
        ("10.0.0.5:8443", "10.0.0.5"),
        ("[fd00::1]:8443", "fd00::1"),
        ("fd00::1", "fd00::1"),
        (None, ""),
    ],
)
def test_peer_address(remote_addr, expected):
    assert mutate.peer_address(remote_addr) == expected


def test_reserved_namespace_writes_no_decision_log(client, caplog):
    caplog.set_level("INFO")
    post(client, review(deployment(), deployment(replicas=5), namespace="kube-public"))

    assert "is reserved" in caplog.text
    assert "validating contents" not in caplog.text
    assert "ALLOWED" not in caplog.text


def test_empty_owner_label_is_unowned(client, published):
    old = deployment()
    old["metadata"]["labels"]["app.heimdall.io/owner"] = ""
    new = deployment(replicas=3)
    new["metadata"]["labels"]["app.heimdall.io/owner"] = ""
    res = post(client, review(old, new))

    assert res.status_code == 200
    assert res.json["response"] == {"allowed": True, "uid": "1234"}
    assert published == []

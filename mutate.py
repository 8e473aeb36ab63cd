import functools
import logging
import pydantic

from flask import Flask, request, jsonify, current_app, g

from models import (
    BaseModel,
    AdmissionReview,
    AdmissionResponse,
    AdmissionReviewStatus,
    Patch,
    PatchType,
)

from policy import OwnershipPolicy
from providers import KubernetesProvider
from publisher import KafkaPublisher
from exc import ApplicationError, DecisionError, RequestError, ResponseEncodingError

LOG = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

JSON_CONTENT_TYPE = "application/json"


class DEFAULTS:
    OWNER_LABEL = "app.heimdall.io/owner"
    PRIORITY_LABEL = "app.heimdall.io/priority"
    NAMESPACE = "heimdall"
    KAFKA_CLUSTER_NAME = "heimdall-kafka-cluster"
    KAFKA_PORT = 9092
    TOPIC = "heimdall-topic"
    TOPIC_PARTITIONS = 2
    TOPIC_REPLICATION_FACTOR = 1
    PUBLISH_TIMEOUT = 5
    RESERVED_NAMESPACES = "kube-system,kube-public"
    PUBLISH_ON_DECODE_ERROR = False
    PROVIDER = KubernetesProvider
    PUBLISHER = KafkaPublisher
    TLS_CERT = "/run/secrets/tls/tls.crt"
    TLS_KEY = "/run/secrets/tls/tls.key"
    PORT = 8443


def jsonresponse():
    """Transforms the response from a view function into a JSON object."""

    def _outer(func):
        @functools.wraps(func)
        def _inner(*args, **kwargs):
            res = func(*args, **kwargs)
            try:
                if isinstance(res, BaseModel):
                    return jsonify(res.model_dump(mode="json", exclude_none=True))
                else:
                    return jsonify(res)
            except (TypeError, ValueError) as err:
                raise ResponseEncodingError(f"marshaling response: {err}") from err

        return _inner

    return _outer


def record_error(msg):
    g.setdefault("errors", []).append(msg)


def peer_address(remote_addr):
    """Strip any port suffix from a peer address.

    Handles "host:port", "[v6addr]:port" and bare IPv4/IPv6 addresses.
    """

    if not remote_addr:
        return ""
    if remote_addr.startswith("["):
        return remote_addr[1:].split("]", 1)[0]
    if remote_addr.count(":") == 1:
        return remote_addr.split(":", 1)[0]
    return remote_addr


def read_admission_review():
    LOG.info("Processing %s request", request.method)

    content_type = request.headers.get("content-type")
    if content_type != JSON_CONTENT_TYPE:
        raise RequestError(
            f"unsupported content type {content_type}, "
            f"only {JSON_CONTENT_TYPE} is supported"
        )

    LOG.info("content type is json, continuing")

    body = AdmissionReview.model_validate_json(request.get_data())
    if body.request is None:
        raise RequestError("malformed admission review: request is nil")

    LOG.info("admission review request %s decoded, continuing", body.request.uid)
    return body


def build_response(body, patch_ops=None, error=None):
    req = body.request
    try:
        if error is not None:
            response = AdmissionResponse(
                uid=req.uid,
                allowed=False,
                status=AdmissionReviewStatus(message=str(error)),
            )
        elif patch_ops:
            response = AdmissionResponse(
                uid=req.uid,
                allowed=True,
                patchType=PatchType.JSONPatch,
                patch=Patch(patch_ops),
            )
        else:
            response = AdmissionResponse(uid=req.uid, allowed=True)
    except pydantic.ValidationError as err:
        raise ResponseEncodingError(f"could not build admission response: {err}")

    return AdmissionReview(apiVersion=body.apiVersion, response=response)


@jsonresponse()
def mutate():
    body = read_admission_review()
    req = body.request

    requester = peer_address(request.remote_addr)
    owner = req.existing_labels().get(current_app.config["OWNER_LABEL"]) or None
    LOG.info("sender ip: %s, owner: %s", requester, owner)

    # Objects in control plane namespaces are never subject to ownership.
    if req.namespace in current_app.config["RESERVED_NAMESPACES"]:
        LOG.info("namespace %s is reserved, allowing request", req.namespace)
        return build_response(body)

    try:
        patch_ops = current_app.policy.decide(req, requester, owner)
    except DecisionError as err:
        record_error(str(err))
        LOG.warning("denying request %s: %s", req.uid, err)
        return build_response(body, error=err)

    LOG.info("allowing request %s", req.uid)
    return build_response(body, patch_ops=patch_ops)


def log_request_errors(exc=None):
    for i, err in enumerate(g.pop("errors", [])):
        LOG.error("Error no. %d handling webhook request: %s", i, err)


def handle_validationerror(err):
    record_error(f"could not deserialize request: {err}")
    return str(err), 400, {"content-type": "text/plain"}


def handle_requesterror(err):
    record_error(str(err))
    return str(err), 400, {"content-type": "text/plain"}


def handle_applicationerror(err):
    record_error(str(err))
    return str(err), 500, {"content-type": "text/plain"}


def health():
    return "OK", 200, {"content-type": "text/plain"}


def create_app(**config) -> Flask:
    """Use an application factory [1] to create the Flask app.

    This makes it much easier to write tests for the application, since we can
    set up the test environment before instantiating the app. This is difficult
    to do if the app is created at `import` time.

    [1]: https://flask.palletsprojects.com/en/3.0.x/patterns/appfactories/
    """

    app = Flask(__name__)
    app.config.from_object(DEFAULTS)
    app.config.from_prefixed_env("HEIMDALL")
    if config:
        app.config.update(config)

    namespaces = app.config["RESERVED_NAMESPACES"]
    if isinstance(namespaces, str):
        namespaces = [ns.strip() for ns in namespaces.split(",") if ns.strip()]
    app.config["RESERVED_NAMESPACES"] = frozenset(namespaces)

    provider = app.config["PROVIDER"](
        port=app.config["KAFKA_PORT"], timeout=app.config["PUBLISH_TIMEOUT"]
    )
    publisher = app.config["PUBLISHER"](
        provider,
        namespace=app.config["NAMESPACE"],
        cluster_name=app.config["KAFKA_CLUSTER_NAME"],
        topic=app.config["TOPIC"],
        partitions=app.config["TOPIC_PARTITIONS"],
        replication_factor=app.config["TOPIC_REPLICATION_FACTOR"],
        timeout=app.config["PUBLISH_TIMEOUT"],
    )
    app.policy = OwnershipPolicy(
        publisher,
        owner_label=app.config["OWNER_LABEL"],
        priority_label=app.config["PRIORITY_LABEL"],
        publish_on_decode_error=app.config["PUBLISH_ON_DECODE_ERROR"],
    )

    app.errorhandler(pydantic.ValidationError)(handle_validationerror)
    app.errorhandler(RequestError)(handle_requesterror)
    app.errorhandler(ApplicationError)(handle_applicationerror)
    app.teardown_request(log_request_errors)
    app.add_url_rule("/healthz", view_func=health)
    app.add_url_rule("/mutate", view_func=mutate, methods=["POST"])

    return app


def main():
    app = create_app()
    # The certificate is read once here and shared by every handler thread.
    app.run(
        host="0.0.0.0",
        port=app.config["PORT"],
        ssl_context=(app.config["TLS_CERT"], app.config["TLS_KEY"]),
        threaded=True,
    )


if __name__ == "__main__":
    main()

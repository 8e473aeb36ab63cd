import logging

from exc import DecisionError, ObjectDecodeError, PolicyViolation, PublishError
from models import AdmissionRequest, PatchAction, ResourceIdentity, decode_object
from publisher import Publisher

LOG = logging.getLogger(__name__)


class OwnershipPolicy:
    """Only the owner recorded on a resource may change it.

    The owner is the value of `owner_label` on the existing object. Other
    requesters may only touch the owner and priority labels; changes to
    `spec` or to any other label are denied and the resource is queued for
    reconciliation.
    """

    def __init__(
        self,
        publisher: Publisher,
        owner_label: str,
        priority_label: str,
        publish_on_decode_error: bool = False,
    ):
        self.publisher = publisher
        self.owner_label = owner_label
        self.priority_label = priority_label
        self.publish_on_decode_error = publish_on_decode_error

    @property
    def allowed_labels(self) -> frozenset[str]:
        return frozenset((self.owner_label, self.priority_label))

    def decide(
        self, req: AdmissionRequest, requester: str, owner: str | None
    ) -> list[PatchAction]:
        """Return the patch for an allowed request or raise DecisionError."""

        LOG.info(
            "request is valid, validating contents of %s/%s", req.namespace, req.name
        )

        try:
            existing = self._decode(req.oldObject, "existing")
            new = self._decode(req.object, "new")
        except ObjectDecodeError as err:
            if self.publish_on_decode_error:
                self._deny(req, err)
            raise

        if existing.same_as(new):
            LOG.info("ALLOWED: no changes detected")
            return []

        # An unowned resource belongs to whoever is changing it.
        if not owner or requester == owner:
            LOG.info("ALLOWED: owner %s matches sender %s", owner, requester)
            return []

        if not existing.same_spec_as(new):
            LOG.warning("DENIED: non-owner %s cannot change spec", requester)
            self._deny(
                req, PolicyViolation(f"DENIED: non-owner {requester} cannot change spec")
            )

        existing_labels = existing.metadata.labels
        new_labels = new.metadata.labels
        for key in sorted(existing_labels.keys() | new_labels.keys()):
            if key in self.allowed_labels:
                continue
            if existing_labels.get(key) == new_labels.get(key):
                continue

            value = new_labels.get(key, "<removed>")
            LOG.warning(
                "DENIED: non-owner %s cannot change label (%s: %s)",
                requester,
                key,
                value,
            )
            self._deny(
                req,
                PolicyViolation(
                    "DENIED: non-owner changes are not permitted to label "
                    f"({key}: {value})"
                ),
            )

        LOG.info("ALLOWED: request from %s changed only ownership labels", requester)
        return []

    def _decode(self, raw, which):
        try:
            return decode_object(raw)
        except ObjectDecodeError as err:
            LOG.error("failed decoding %s object: %s", which, err)
            raise ObjectDecodeError(f"failed decoding {which} object: {err}") from err

    def _deny(self, req, err: DecisionError):
        """Queue the resource for reconciliation, then raise `err`.

        A failure to queue is appended to the denial; it never turns it into
        an allow.
        """

        identity = ResourceIdentity.from_request(req)
        try:
            self.publisher.publish(identity)
        except PublishError as publish_err:
            LOG.warning("failed to queue resource for reconcile: %s", publish_err)
            raise type(err)(
                f"{err}; resource not queued for reconcile: {publish_err}"
            ) from publish_err

        LOG.info(
            "queued %s/%s for reconcile (message %s)",
            identity.namespace,
            identity.name,
            identity.message_id,
        )
        raise err

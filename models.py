import base64
import json
import uuid
from typing import Any, Literal
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    RootModel,
    ValidationError,
    constr,
    model_validator,
    field_validator,
)
from enum import StrEnum

from exc import ObjectDecodeError


class ApiVersion(StrEnum):
    V1 = "admission.k8s.io/v1"
    V1BETA1 = "admission.k8s.io/v1beta1"


class Operation(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"


class PatchType(StrEnum):
    JSONPatch = "JSONPatch"


class PatchOp(StrEnum):
    REPLACE = "replace"
    ADD = "add"
    REMOVE = "remove"


class PatchAction(BaseModel):
    op: PatchOp
    path: str
    value: Any = None


# https://jsonpatch.com/
Patch = RootModel[list[PatchAction]]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#status-v1-meta
class AdmissionReviewStatus(BaseModel):
    message: str


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionResponse
class AdmissionResponse(BaseModel):
    allowed: bool
    status: AdmissionReviewStatus | None = None
    uid: str
    patchType: PatchType | None = None
    patch: str | None = None

    @field_validator("patch", mode="before")
    @classmethod
    def validate_patch(cls, val):
        if isinstance(val, Patch):
            val = base64.b64encode(val.model_dump_json(exclude_none=True).encode())
        elif isinstance(val, (str, bytes)):
            # Make sure the base64 string contains valid data.
            Patch.model_validate_json(base64.b64decode(val))
        if isinstance(val, bytes):
            val = val.decode()
        return val

    @model_validator(mode="after")
    def validate_model(self):
        if self.patch and not self.patchType:
            raise ValueError("missing patchType field")
        if self.patchType and not self.patch:
            raise ValueError(f"patchType is {self.patchType} but there is no patch")
        if self.allowed and self.status:
            raise ValueError("an allowed response cannot carry a denial message")
        if not self.allowed:
            if self.patch:
                raise ValueError("a denied response cannot carry a patch")
            if not self.status:
                raise ValueError("a denied response requires a status message")

        return self


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.30/#groupversionkind-v1-meta
class GroupVersionKind(BaseModel):
    group: str = ""
    version: str = ""
    kind: str = ""


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionRequest
class AdmissionRequest(BaseModel):
    uid: constr(min_length=1)
    kind: GroupVersionKind = GroupVersionKind()
    name: str | None = None
    namespace: str | None = None
    operation: Operation = Operation.UPDATE
    # Left undecoded; the policy engine decides what a malformed object means.
    object: Any = None
    oldObject: Any = None

    def existing_labels(self) -> dict[str, str]:
        """Labels on the object as it was before this request, or {}."""
        try:
            return decode_object(self.oldObject).metadata.labels
        except ObjectDecodeError:
            return {}


# https://kubernetes.io/docs/reference/config-api/apiserver-admission.v1/#admission-k8s-io-v1-AdmissionReview
class AdmissionReview(BaseModel):
    apiVersion: Literal[ApiVersion.V1, ApiVersion.V1BETA1] = ApiVersion.V1
    kind: Literal["AdmissionReview"] = "AdmissionReview"
    request: AdmissionRequest | None = None
    response: AdmissionResponse | None = None


class ObjectMeta(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    namespace: str | None = None
    labels: dict[str, str] = {}

    @field_validator("labels", mode="before")
    @classmethod
    def validate_labels(cls, val):
        return {} if val is None else val


class KubernetesObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    apiVersion: str | None = None
    kind: str | None = None
    metadata: ObjectMeta = ObjectMeta()
    spec: Any = None

    _document: dict[str, Any] = PrivateAttr(default_factory=dict)

    def document(self) -> dict[str, Any]:
        """The object exactly as it was sent."""
        return self._document

    def same_as(self, other: "KubernetesObject") -> bool:
        return json_equal(self.document(), other.document())

    def same_spec_as(self, other: "KubernetesObject") -> bool:
        return json_equal(self.document().get("spec"), other.document().get("spec"))


def json_equal(a, b) -> bool:
    """Compare decoded JSON values the way they were encoded.

    Booleans never equal numbers, while 1 and 1.0 are the same JSON number.
    """
    if isinstance(a, dict):
        return (
            isinstance(b, dict)
            and a.keys() == b.keys()
            and all(json_equal(a[key], b[key]) for key in a)
        )
    if isinstance(a, list):
        return (
            isinstance(b, list)
            and len(a) == len(b)
            and all(json_equal(x, y) for x, y in zip(a, b))
        )
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def decode_object(raw) -> KubernetesObject:
    """Decode an embedded object or raw JSON bytes into a KubernetesObject."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except ValueError as err:
            raise ObjectDecodeError(str(err)) from err
    if not isinstance(raw, dict):
        raise ObjectDecodeError(f"expected a JSON object, got {type(raw).__name__}")

    try:
        obj = KubernetesObject.model_validate(raw)
    except ValidationError as err:
        raise ObjectDecodeError(str(err)) from err

    obj._document = raw
    return obj


class ResourceIdentity(BaseModel):
    """The record queued for reconciliation when a change is denied."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: uuid.UUID = Field(default_factory=uuid.uuid4, alias="MessageID")
    name: str = Field("", alias="Name")
    namespace: str = Field("", alias="Namespace")
    kind: str = Field("", alias="Kind")
    group: str = Field("", alias="Group")
    version: str = Field("", alias="Version")

    @classmethod
    def from_request(cls, req: AdmissionRequest) -> "ResourceIdentity":
        return cls(
            name=req.name or "",
            namespace=req.namespace or "",
            kind=req.kind.kind,
            group=req.kind.group,
            version=req.kind.version,
        )

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()

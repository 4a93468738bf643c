"""Representation of the objects read and written by the chart controller.

The controller reads `HelmChart` and `HelmChartConfig` custom resources and
writes a set of plain kubernetes objects (a ServiceAccount, a
ClusterRoleBinding, ConfigMaps and a Job) that run the helm installer.
"""

import base64
from collections.abc import Iterator
from dataclasses import dataclass, field
import logging
from typing import Any, ClassVar, Optional

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "HelmChart",
    "HelmChartConfig",
    "HelmChartStatus",
    "ServiceAccount",
    "ClusterRoleBinding",
    "ConfigMap",
    "Job",
    "JobStatus",
    "NamedResource",
    "ObjectSet",
    "parse_raw_obj",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
HELM_CHART_DOMAIN = "helm.cattle.io"
HELM_CHART_KIND = "HelmChart"
HELM_CHART_CONFIG_KIND = "HelmChartConfig"
CONFIG_MAP_KIND = "ConfigMap"
SERVICE_ACCOUNT_KIND = "ServiceAccount"
CLUSTER_ROLE_BINDING_KIND = "ClusterRoleBinding"
JOB_KIND = "Job"
RBAC_API_GROUP = "rbac.authorization.k8s.io"

CHART_LABEL = "helmcharts.helm.cattle.io/chart"
CONFIG_HASH_ANNOTATION = "helmcharts.helm.cattle.io/configHash"
UNMANAGED_ANNOTATION = "helmcharts.helm.cattle.io/unmanaged"

FAILURE_POLICY_REINSTALL = "reinstall"
FAILURE_POLICY_ABORT = "abort"

ACTION_INSTALL = "install"
ACTION_DELETE = "delete"


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


def _parse_metadata(cls: type, doc: dict[str, Any]) -> tuple[str, str]:
    """Return the name and namespace of a namespaced resource document."""
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid {cls} missing metadata: {doc}")
    if not (name := metadata.get("name")):
        raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
    if not (namespace := metadata.get("namespace")):
        raise InputException(f"Invalid {cls} missing metadata.namespace: {doc}")
    return name, namespace


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class RawObject(BaseManifest):
    """Raw kubernetes object of a kind the controller does not model."""

    kind: str
    """The kind of the object."""

    api_version: str
    """The apiVersion of the object."""

    name: str
    """The name of the object."""

    namespace: str | None
    """The namespace of the object."""

    spec: dict[str, Any] | None = None
    """The spec of the object."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "RawObject":
        """Parse a RawObject from a raw kubernetes object."""
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        return cls(
            kind=doc["kind"],
            api_version=api_version,
            name=name,
            namespace=metadata.get("namespace"),
            spec=doc.get("spec", {}),
        )


@dataclass
class HelmChartStatus(BaseManifest):
    """Observed state of a HelmChart recorded by the controller."""

    job_name: str | None = field(
        metadata=field_options(alias="jobName"), default=None
    )
    """The name of the Job last applied for the chart."""


def _parse_set_values(cls: type, values: Any) -> dict[str, Any] | None:
    """Validate the scalar overrides in spec.set."""
    if values is None:
        return None
    if not isinstance(values, dict):
        raise InputException(f"Invalid {cls} spec.set must be a mapping: {values}")
    for key, value in values.items():
        if value is not None and not isinstance(value, (bool, int, float, str)):
            raise InputException(
                f"Invalid {cls} spec.set.{key} must be a scalar: {value!r}"
            )
    return dict(values)


def _parse_bootstrap(cls: type, value: Any) -> bool:
    """Return the bootstrap flag, which must be a YAML boolean when set."""
    if value is None:
        return False
    if not isinstance(value, bool):
        raise InputException(
            f"Invalid {cls} spec.bootstrap must be a boolean: {value!r}"
        )
    return value


def _parse_timeout(cls: type, value: Any) -> str | None:
    """Return the timeout as a duration string, treating integers as seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise InputException(f"Invalid {cls} spec.timeout: {value!r}")
    if isinstance(value, int):
        return f"{value}s"
    return value


@dataclass
class HelmChart(BaseManifest):
    """A request to install a helm chart by running an installer Job."""

    kind: ClassVar[str] = HELM_CHART_KIND
    """The kind of the object."""

    name: str
    """The name of the HelmChart."""

    namespace: str
    """The namespace that owns the HelmChart."""

    chart: str | None = None
    """The chart name or URL within the repository."""

    chart_content: str | None = field(
        metadata=field_options(alias="chartContent"), default=None
    )
    """A base64 encoded chart archive, used instead of a repository chart."""

    version: str | None = None
    """The version of the chart."""

    repo: str | None = None
    """The URL of the chart repository."""

    repo_ca: str | None = field(metadata=field_options(alias="repoCA"), default=None)
    """A PEM encoded CA bundle used to verify the repository."""

    repo_secret: str | None = field(
        metadata=field_options(alias="repoSecret"), default=None
    )
    """Name of a Secret holding `username` and `password` for the repository."""

    target_namespace: str | None = field(
        metadata=field_options(alias="targetNamespace"), default=None
    )
    """The namespace the release is installed into."""

    values_content: str | None = field(
        metadata=field_options(alias="valuesContent"), default=None
    )
    """Raw values YAML passed to the chart."""

    set_values: Optional[dict[str, Any]] = field(
        metadata=field_options(alias="set"), default=None
    )
    """Typed scalar overrides passed with --set or --set-string."""

    failure_policy: str | None = field(
        metadata=field_options(alias="failurePolicy"), default=None
    )
    """Whether a failed install is reinstalled or aborted."""

    timeout: str | None = None
    """Timeout for the helm operation as a duration string."""

    job_image: str | None = field(
        metadata=field_options(alias="jobImage"), default=None
    )
    """Override of the installer image."""

    helm_version: str | None = field(
        metadata=field_options(alias="helmVersion"), default=None
    )
    """Override of the helm version used by the installer."""

    bootstrap: bool = False
    """Run the Job before the cluster network and taints are settled."""

    annotations: dict[str, str] | None = None
    """Annotations on the HelmChart."""

    deletion_timestamp: str | None = field(
        metadata=field_options(alias="deletionTimestamp"), default=None
    )
    """Set when the HelmChart has been requested for deletion."""

    status: HelmChartStatus = field(default_factory=HelmChartStatus)
    """Observed state recorded by the controller."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmChart":
        """Parse a HelmChart from a kubernetes resource object."""
        _check_version(doc, HELM_CHART_DOMAIN)
        name, namespace = _parse_metadata(cls, doc)
        metadata = doc["metadata"]
        spec = doc.get("spec") or {}
        status = doc.get("status") or {}
        return HelmChart(
            name=name,
            namespace=namespace,
            chart=spec.get("chart") or None,
            chart_content=spec.get("chartContent") or None,
            version=spec.get("version") or None,
            repo=spec.get("repo") or None,
            repo_ca=spec.get("repoCA") or None,
            repo_secret=spec.get("repoSecret") or None,
            target_namespace=spec.get("targetNamespace") or None,
            values_content=spec.get("valuesContent") or None,
            set_values=_parse_set_values(cls, spec.get("set")),
            failure_policy=spec.get("failurePolicy") or None,
            timeout=_parse_timeout(cls, spec.get("timeout")),
            job_image=spec.get("jobImage") or None,
            helm_version=spec.get("helmVersion") or None,
            bootstrap=_parse_bootstrap(cls, spec.get("bootstrap")),
            annotations=metadata.get("annotations"),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            status=HelmChartStatus(job_name=status.get("jobName")),
        )

    @property
    def has_source(self) -> bool:
        """Return True if either a repository chart or chart content is set."""
        return bool(self.chart or self.chart_content)

    @property
    def unmanaged(self) -> bool:
        """Return True if the chart is marked as not managed by the controller."""
        return UNMANAGED_ANNOTATION in (self.annotations or {})

    @property
    def deleting(self) -> bool:
        """Return True if the chart has been requested for deletion."""
        return self.deletion_timestamp is not None

    @property
    def action(self) -> str:
        """The installer action for the current state of the chart."""
        return ACTION_DELETE if self.deleting else ACTION_INSTALL

    @property
    def release_namespace(self) -> str:
        """Actual namespace where the chart will be installed to."""
        if self.target_namespace:
            return self.target_namespace
        return self.namespace

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"

    @property
    def resource_id(self) -> NamedResource:
        """Return the identifier of the HelmChart."""
        return NamedResource(HELM_CHART_KIND, self.namespace, self.name)


@dataclass
class HelmChartConfig(BaseManifest):
    """Supplemental values and policy layered onto the HelmChart of the same name."""

    kind: ClassVar[str] = HELM_CHART_CONFIG_KIND
    """The kind of the object."""

    name: str
    """The name of the HelmChartConfig, matching the HelmChart name."""

    namespace: str
    """The namespace of the HelmChartConfig, matching the HelmChart namespace."""

    values_content: str | None = field(
        metadata=field_options(alias="valuesContent"), default=None
    )
    """Raw values YAML that takes precedence over the HelmChart values."""

    failure_policy: str | None = field(
        metadata=field_options(alias="failurePolicy"), default=None
    )
    """Override of the HelmChart failure policy."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HelmChartConfig":
        """Parse a HelmChartConfig from a kubernetes resource object."""
        _check_version(doc, HELM_CHART_DOMAIN)
        name, namespace = _parse_metadata(cls, doc)
        spec = doc.get("spec") or {}
        return HelmChartConfig(
            name=name,
            namespace=namespace,
            values_content=spec.get("valuesContent") or None,
            failure_policy=spec.get("failurePolicy") or None,
        )

    @property
    def resource_id(self) -> NamedResource:
        """Return the identifier of the HelmChartConfig."""
        return NamedResource(HELM_CHART_CONFIG_KIND, self.namespace, self.name)


@dataclass(kw_only=True)
class KubeObject(BaseManifest):
    """Base class for the kubernetes objects written by the controller."""

    api_version: ClassVar[str] = "v1"
    """The apiVersion of the object."""

    kind: ClassVar[str]
    """The kind of the object."""

    name: str
    """The name of the object."""

    namespace: str | None = None
    """The namespace of the object, unset for cluster scoped objects."""

    labels: dict[str, str] | None = None
    """Labels on the object."""

    annotations: dict[str, str] | None = None
    """Annotations on the object."""

    @property
    def resource_id(self) -> NamedResource:
        """Return the identifier of the object."""
        return NamedResource(self.kind, self.namespace, self.name)

    def _body(self) -> dict[str, Any]:
        """Return the top level fields of the object other than metadata."""
        return {}

    def to_manifest(self) -> dict[str, Any]:
        """Return the object as a kubernetes resource document."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
            **self._body(),
        }


@dataclass(kw_only=True)
class ServiceAccount(KubeObject):
    """Identity the installer Job runs as."""

    kind: ClassVar[str] = SERVICE_ACCOUNT_KIND

    automount_service_account_token: bool = field(
        metadata=field_options(alias="automountServiceAccountToken"), default=True
    )

    def _body(self) -> dict[str, Any]:
        return {"automountServiceAccountToken": self.automount_service_account_token}


@dataclass
class RoleRef(BaseManifest):
    """Reference to the role granted by a binding."""

    kind: str
    name: str
    api_group: str = field(
        metadata=field_options(alias="apiGroup"), default=RBAC_API_GROUP
    )


@dataclass
class Subject(BaseManifest):
    """An identity a role is granted to."""

    kind: str
    name: str
    namespace: str | None = None


@dataclass(kw_only=True)
class ClusterRoleBinding(KubeObject):
    """Grants a cluster role to a set of subjects."""

    api_version: ClassVar[str] = f"{RBAC_API_GROUP}/v1"
    kind: ClassVar[str] = CLUSTER_ROLE_BINDING_KIND

    role_ref: RoleRef = field(metadata=field_options(alias="roleRef"))
    subjects: list[Subject] = field(default_factory=list)

    def _body(self) -> dict[str, Any]:
        return {
            "roleRef": self.role_ref.to_dict(),
            "subjects": [subject.to_dict() for subject in self.subjects],
        }


@dataclass(kw_only=True)
class ConfigMap(KubeObject):
    """A ConfigMap is an API object used to store data in key-value pairs."""

    kind: ClassVar[str] = CONFIG_MAP_KIND

    data: dict[str, str] = field(default_factory=dict)
    """Text payloads keyed by filename."""

    binary_data: dict[str, bytes] = field(
        metadata=field_options(alias="binaryData"), default_factory=dict
    )
    """Binary payloads keyed by filename."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ConfigMap":
        """Parse a config map object from a kubernetes resource."""
        _check_version(doc, "v1")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        return ConfigMap(
            name=name,
            namespace=metadata.get("namespace"),
            labels=metadata.get("labels"),
            annotations=metadata.get("annotations"),
            data=dict(doc.get("data") or {}),
            binary_data={
                key: base64.b64decode(value)
                for key, value in (doc.get("binaryData") or {}).items()
            },
        )

    def _body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"data": dict(self.data)}
        if self.binary_data:
            body["binaryData"] = {
                key: base64.b64encode(value).decode()
                for key, value in self.binary_data.items()
            }
        return body


@dataclass
class SecretKeySelector(BaseManifest):
    """Selects a key of a Secret."""

    name: str
    key: str


@dataclass
class EnvVarSource(BaseManifest):
    """Source for an environment variable value."""

    secret_key_ref: SecretKeySelector = field(
        metadata=field_options(alias="secretKeyRef")
    )


@dataclass
class EnvVar(BaseManifest):
    """An environment variable present in a container."""

    name: str
    value: str | None = None
    value_from: EnvVarSource | None = field(
        metadata=field_options(alias="valueFrom"), default=None
    )


@dataclass
class VolumeMount(BaseManifest):
    """Mounting of a volume within a container."""

    name: str
    mount_path: str = field(metadata=field_options(alias="mountPath"))


@dataclass
class ConfigMapVolumeSource(BaseManifest):
    """Populates a volume with the contents of a ConfigMap."""

    name: str


@dataclass
class Volume(BaseManifest):
    """A named volume in a pod."""

    name: str
    config_map: ConfigMapVolumeSource = field(
        metadata=field_options(alias="configMap")
    )


@dataclass
class Toleration(BaseManifest):
    """Allows a pod to schedule onto nodes with a matching taint."""

    key: str
    operator: str | None = None
    value: str | None = None
    effect: str | None = None


@dataclass
class Container(BaseManifest):
    """A single container in a pod."""

    name: str
    image: str
    image_pull_policy: str | None = field(
        metadata=field_options(alias="imagePullPolicy"), default=None
    )
    args: list[str] = field(default_factory=list)
    env: list[EnvVar] = field(default_factory=list)
    volume_mounts: list[VolumeMount] = field(
        metadata=field_options(alias="volumeMounts"), default_factory=list
    )


@dataclass
class PodTemplate(BaseManifest):
    """Template for the pods created by a Job."""

    containers: list[Container]
    labels: dict[str, str] | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    annotations: dict[str, str] | None = field(
        metadata={"serialize": "omit"}, default=None
    )
    service_account_name: str | None = field(
        metadata=field_options(alias="serviceAccountName"), default=None
    )
    restart_policy: str | None = field(
        metadata=field_options(alias="restartPolicy"), default=None
    )
    node_selector: dict[str, str] | None = field(
        metadata=field_options(alias="nodeSelector"), default=None
    )
    host_network: bool | None = field(
        metadata=field_options(alias="hostNetwork"), default=None
    )
    tolerations: list[Toleration] | None = None
    volumes: list[Volume] = field(default_factory=list)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "PodTemplate":
        """Parse a pod template from a Job spec.template document."""
        metadata = doc.get("metadata") or {}
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        template = cls.from_dict(spec)
        template.labels = metadata.get("labels")
        template.annotations = metadata.get("annotations")
        return template

    @property
    def container(self) -> Container:
        """The installer container, the only container of the pod."""
        return self.containers[0]

    def to_manifest(self) -> dict[str, Any]:
        """Return the template as a kubernetes document."""
        metadata: dict[str, Any] = {}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return {"metadata": metadata, "spec": self.to_dict()}


@dataclass
class JobStatus(BaseManifest):
    """Observed state of a Job."""

    active: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass(kw_only=True)
class Job(KubeObject):
    """A Job running the helm installer to completion."""

    api_version: ClassVar[str] = "batch/v1"
    kind: ClassVar[str] = JOB_KIND

    template: PodTemplate
    """Template of the installer pod."""

    backoff_limit: int | None = field(
        metadata=field_options(alias="backoffLimit"), default=None
    )
    """Number of retries before the Job is marked failed."""

    status: JobStatus = field(
        metadata={"serialize": "omit"}, default_factory=JobStatus
    )
    """Observed state, owned by the cluster and never applied."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Job":
        """Parse a Job from a kubernetes resource object."""
        _check_version(doc, "batch/")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        if not (template := spec.get("template")):
            raise InputException(f"Invalid {cls} missing spec.template: {doc}")
        status = doc.get("status") or {}
        return Job(
            name=name,
            namespace=metadata.get("namespace"),
            labels=metadata.get("labels"),
            annotations=metadata.get("annotations"),
            template=PodTemplate.parse_doc(template),
            backoff_limit=spec.get("backoffLimit"),
            status=JobStatus(
                active=status.get("active", 0),
                succeeded=status.get("succeeded", 0),
                failed=status.get("failed", 0),
            ),
        )

    def _body(self) -> dict[str, Any]:
        spec: dict[str, Any] = {}
        if self.backoff_limit is not None:
            spec["backoffLimit"] = self.backoff_limit
        spec["template"] = self.template.to_manifest()
        return {"spec": spec}


class ObjectSet:
    """An ordered collection of desired objects keyed by resource identity.

    Adding an object with the same identity as an existing entry replaces it.
    """

    def __init__(self, *objects: KubeObject | None) -> None:
        """Initialize ObjectSet."""
        self._objects: dict[NamedResource, KubeObject] = {}
        self.add(*objects)

    def add(self, *objects: KubeObject | None) -> None:
        """Add objects to the set, ignoring any that are None."""
        for obj in objects:
            if obj is None:
                continue
            self._objects[obj.resource_id] = obj

    def get(self, resource_id: NamedResource) -> KubeObject | None:
        """Return the object with the given identity, if present."""
        return self._objects.get(resource_id)

    @property
    def resource_ids(self) -> list[NamedResource]:
        """Identities of all objects in the set, in insertion order."""
        return list(self._objects)

    def to_manifests(self) -> list[dict[str, Any]]:
        """Return all objects as kubernetes resource documents."""
        return [obj.to_manifest() for obj in self._objects.values()]

    def __iter__(self) -> Iterator[KubeObject]:
        return iter(list(self._objects.values()))

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._objects


def parse_raw_obj(obj: dict[str, Any]) -> BaseManifest:
    """Parse a raw kubernetes object into a BaseManifest."""
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    if not obj.get("apiVersion"):
        raise InputException(f"Invalid object missing apiVersion: {obj}")
    if kind == HELM_CHART_KIND:
        return HelmChart.parse_doc(obj)
    if kind == HELM_CHART_CONFIG_KIND:
        return HelmChartConfig.parse_doc(obj)
    if kind == JOB_KIND:
        return Job.parse_doc(obj)
    if kind == CONFIG_MAP_KIND:
        return ConfigMap.parse_doc(obj)
    _LOGGER.debug("Parsing %s as a raw object", kind)
    return RawObject.parse_doc(obj)

"""Construction of the objects that install or delete a HelmChart.

A HelmChart is installed by a Job running the helm installer image. The Job
runs as a per-chart ServiceAccount bound to cluster-admin, reads values from
a ConfigMap mounted at /config and, for charts shipped inline, the chart
archive from a ConfigMap mounted at /chart.

Everything in this module is a pure function of the HelmChart, its optional
HelmChartConfig and the controller configuration. Object names depend only
on the chart identity and action, so there is at most one Job per chart and
action.
"""

import logging

from chart_controller.args import helm_args
from chart_controller.digest import stamp_digest
from chart_controller.manifest import (
    HelmChart,
    HelmChartConfig,
    ServiceAccount,
    ClusterRoleBinding,
    RoleRef,
    Subject,
    ConfigMap,
    ConfigMapVolumeSource,
    Container,
    EnvVar,
    EnvVarSource,
    SecretKeySelector,
    Job,
    PodTemplate,
    Toleration,
    Volume,
    VolumeMount,
    ObjectSet,
    CHART_LABEL,
    SERVICE_ACCOUNT_KIND,
)

from .config import HelmControllerConfig

__all__ = [
    "build_objects",
    "effective_failure_policy",
    "job_name",
]

_LOGGER = logging.getLogger(__name__)

BACKOFF_LIMIT = 1000
CLUSTER_ADMIN_ROLE = "cluster-admin"
CONTAINER_NAME = "helm"
HELM_DRIVER = "secret"

VALUES_VOLUME = "values"
VALUES_MOUNT_PATH = "/config"
CONTENT_VOLUME = "content"
CONTENT_MOUNT_PATH = "/chart"

# Values files are merged by the installer in filename order, last wins
CHART_VALUES_FILE = "values-01_HelmChart.yaml"
CONFIG_VALUES_FILE = "values-10_HelmChartConfig.yaml"
REPO_CA_FILE = "ca-file.pem"

LABEL_OS = "kubernetes.io/os"
LABEL_NODE_ROLE_PREFIX = "node-role.kubernetes.io/"
LABEL_CONTROL_PLANE = LABEL_NODE_ROLE_PREFIX + "control-plane"
LABEL_ETCD = LABEL_NODE_ROLE_PREFIX + "etcd"
TAINT_NODE_NOT_READY = "node.kubernetes.io/not-ready"
TAINT_EXTERNAL_CLOUD_PROVIDER = "node.cloudprovider.kubernetes.io/uninitialized"

# Bootstrap charts talk to the local apiserver directly since cluster
# networking may not be running yet
BOOTSTRAP_API_HOST = "127.0.0.1"
BOOTSTRAP_API_PORT = "6443"

BOOTSTRAP_TOLERATIONS = [
    Toleration(key=TAINT_NODE_NOT_READY, effect="NoSchedule"),
    Toleration(
        key=TAINT_EXTERNAL_CLOUD_PROVIDER,
        operator="Equal",
        value="true",
        effect="NoSchedule",
    ),
    Toleration(key="CriticalAddonsOnly", operator="Exists"),
    Toleration(key=LABEL_ETCD, operator="Exists", effect="NoExecute"),
    Toleration(key=LABEL_CONTROL_PLANE, operator="Exists", effect="NoSchedule"),
]


def service_account_name(chart: HelmChart) -> str:
    return f"helm-{chart.name}"


def job_name(chart: HelmChart, action: str | None = None) -> str:
    """Return the name of the Job for the chart and action."""
    return f"helm-{action or chart.action}-{chart.name}"


def effective_failure_policy(
    chart: HelmChart, config: HelmChartConfig | None, default: str
) -> str:
    """Return the failure policy, preferring the HelmChartConfig over the chart."""
    if config is not None and config.failure_policy:
        return config.failure_policy
    if chart.failure_policy:
        return chart.failure_policy
    return default


def service_account(chart: HelmChart) -> ServiceAccount:
    return ServiceAccount(
        name=service_account_name(chart),
        namespace=chart.namespace,
        automount_service_account_token=True,
    )


def role_binding(chart: HelmChart) -> ClusterRoleBinding:
    """Return the binding granting the installer cluster-admin."""
    return ClusterRoleBinding(
        name=f"helm-{chart.namespace}-{chart.name}",
        role_ref=RoleRef(kind="ClusterRole", name=CLUSTER_ADMIN_ROLE),
        subjects=[
            Subject(
                kind=SERVICE_ACCOUNT_KIND,
                name=service_account_name(chart),
                namespace=chart.namespace,
            )
        ],
    )


def values_config_map(
    chart: HelmChart, config: HelmChartConfig | None = None
) -> ConfigMap:
    """Return the ConfigMap of values files layered for the installer."""
    data: dict[str, str] = {}
    if chart.values_content:
        data[CHART_VALUES_FILE] = chart.values_content
    if chart.repo_ca:
        data[REPO_CA_FILE] = chart.repo_ca
    if config is not None and config.values_content:
        data[CONFIG_VALUES_FILE] = config.values_content
    return ConfigMap(
        name=f"chart-values-{chart.name}",
        namespace=chart.namespace,
        data=data,
    )


def content_config_map(chart: HelmChart) -> ConfigMap | None:
    """Return the ConfigMap holding the inline chart archive, if any."""
    if not chart.chart_content:
        return None
    return ConfigMap(
        name=f"chart-content-{chart.name}",
        namespace=chart.namespace,
        data={f"{chart.name}.tgz.base64": chart.chart_content},
    )


def _secret_ref(chart: HelmChart, key: str) -> EnvVarSource | None:
    """Return a reference to a repository credential, without reading it."""
    if not chart.repo_secret:
        return None
    return EnvVarSource(
        secret_key_ref=SecretKeySelector(name=chart.repo_secret, key=key)
    )


def _env(
    chart: HelmChart, failure_policy: str, controller_config: HelmControllerConfig
) -> list[EnvVar]:
    env = [
        EnvVar(name="NAME", value=chart.name),
        EnvVar(name="VERSION", value=chart.version or ""),
        EnvVar(name="REPO", value=chart.repo or ""),
        EnvVar(name="REPO_USERNAME", value_from=_secret_ref(chart, "username")),
        EnvVar(name="REPO_PASSWORD", value_from=_secret_ref(chart, "password")),
        EnvVar(name="HELM_DRIVER", value=HELM_DRIVER),
        EnvVar(name="CHART_NAMESPACE", value=chart.namespace),
        EnvVar(name="CHART", value=chart.chart or ""),
        EnvVar(name="HELM_VERSION", value=chart.helm_version or ""),
        EnvVar(name="TARGET_NAMESPACE", value=chart.release_namespace),
    ]
    if chart.timeout:
        env.append(EnvVar(name="TIMEOUT", value=chart.timeout))
    if chart.bootstrap:
        env.extend(
            [
                EnvVar(name="KUBERNETES_SERVICE_HOST", value=BOOTSTRAP_API_HOST),
                EnvVar(name="KUBERNETES_SERVICE_PORT", value=BOOTSTRAP_API_PORT),
                EnvVar(name="BOOTSTRAP", value="true"),
            ]
        )
    for name, value in controller_config.proxy_env.items():
        if value:
            env.append(EnvVar(name=name, value=value))
    env.append(EnvVar(name="FAILURE_POLICY", value=failure_policy))
    return env


def job(
    chart: HelmChart,
    values: ConfigMap,
    content: ConfigMap | None,
    failure_policy: str,
    controller_config: HelmControllerConfig,
) -> Job:
    """Return the installer Job for the current action of the chart."""
    image = (chart.job_image or "").strip() or controller_config.default_job_image

    volumes = [Volume(name=VALUES_VOLUME, config_map=ConfigMapVolumeSource(values.name))]
    mounts = [VolumeMount(name=VALUES_VOLUME, mount_path=VALUES_MOUNT_PATH)]
    if content is not None:
        volumes.append(
            Volume(name=CONTENT_VOLUME, config_map=ConfigMapVolumeSource(content.name))
        )
        mounts.append(VolumeMount(name=CONTENT_VOLUME, mount_path=CONTENT_MOUNT_PATH))

    node_selector = {LABEL_OS: "linux"}
    tolerations: list[Toleration] | None = None
    host_network: bool | None = None
    if chart.bootstrap:
        node_selector[LABEL_CONTROL_PLANE] = "true"
        host_network = True
        tolerations = list(BOOTSTRAP_TOLERATIONS)

    template = PodTemplate(
        labels={CHART_LABEL: chart.name},
        annotations={},
        service_account_name=service_account_name(chart),
        restart_policy="OnFailure",
        node_selector=node_selector,
        host_network=host_network,
        tolerations=tolerations,
        volumes=volumes,
        containers=[
            Container(
                name=CONTAINER_NAME,
                image=image,
                image_pull_policy="IfNotPresent",
                args=helm_args(chart),
                env=_env(chart, failure_policy, controller_config),
                volume_mounts=mounts,
            )
        ],
    )
    return Job(
        name=job_name(chart),
        namespace=chart.namespace,
        labels={CHART_LABEL: chart.name},
        backoff_limit=BACKOFF_LIMIT,
        template=template,
    )


def build_objects(
    chart: HelmChart,
    config: HelmChartConfig | None,
    controller_config: HelmControllerConfig,
) -> ObjectSet:
    """Return the complete set of objects desired for the chart.

    The Job pod template carries a digest of the values and content so that
    a content change replaces the Job.
    """
    failure_policy = effective_failure_policy(
        chart, config, controller_config.default_failure_policy
    )
    values = values_config_map(chart, config)
    content = content_config_map(chart)
    installer = job(chart, values, content, failure_policy, controller_config)
    stamp_digest(installer, content, values)
    _LOGGER.debug(
        "Built %s objects for %s (failure policy %s)",
        installer.name,
        chart.namespaced_name,
        failure_policy,
    )
    return ObjectSet(
        service_account(chart),
        role_binding(chart),
        content,
        values,
        installer,
    )

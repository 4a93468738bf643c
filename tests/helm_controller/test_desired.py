"""Tests for building the objects desired for a HelmChart."""

from pathlib import Path

import pytest
import yaml

from chart_controller.digest import config_digest
from chart_controller.helm_controller import HelmControllerConfig, build_objects, job_name
from chart_controller.helm_controller.config import DEFAULT_JOB_IMAGE
from chart_controller.helm_controller.desired import (
    BOOTSTRAP_TOLERATIONS,
    effective_failure_policy,
)
from chart_controller.manifest import (
    ClusterRoleBinding,
    ConfigMap,
    HelmChart,
    HelmChartConfig,
    Job,
    NamedResource,
    ServiceAccount,
    CONFIG_HASH_ANNOTATION,
)

TESTDATA_DIR = Path("tests/testdata")


@pytest.fixture(name="charts")
def charts_fixture() -> list[HelmChart]:
    """Load the test HelmCharts."""
    docs = yaml.safe_load_all((TESTDATA_DIR / "charts.yaml").read_text())
    return [HelmChart.parse_doc(doc) for doc in docs if doc["kind"] == "HelmChart"]


@pytest.fixture(name="traefik")
def traefik_fixture(charts: list[HelmChart]) -> HelmChart:
    """A chart installed from a repository."""
    return charts[0]


@pytest.fixture(name="coredns")
def coredns_fixture(charts: list[HelmChart]) -> HelmChart:
    """A bootstrap chart shipped inline."""
    return charts[1]


@pytest.fixture(name="traefik_config")
def traefik_config_fixture() -> HelmChartConfig:
    """The HelmChartConfig layered onto the traefik chart."""
    doc = yaml.safe_load((TESTDATA_DIR / "configs.yaml").read_text())
    return HelmChartConfig.parse_doc(doc)


@pytest.fixture(name="controller_config")
def controller_config_fixture() -> HelmControllerConfig:
    """Controller configuration without proxy settings."""
    return HelmControllerConfig()


def _job(chart: HelmChart, config: HelmChartConfig | None = None, **kwargs) -> Job:  # type: ignore[no-untyped-def]
    objects = build_objects(chart, config, HelmControllerConfig(**kwargs))
    job = objects.get(NamedResource("Job", chart.namespace, job_name(chart)))
    assert isinstance(job, Job)
    return job


def _env(job: Job) -> dict[str, str | None]:
    return {env.name: env.value for env in job.template.container.env}


def test_object_names(
    traefik: HelmChart, controller_config: HelmControllerConfig
) -> None:
    """Test the names of the objects built for a chart."""
    objects = build_objects(traefik, None, controller_config)
    assert objects.resource_ids == [
        NamedResource("ServiceAccount", "kube-system", "helm-traefik"),
        NamedResource("ClusterRoleBinding", None, "helm-kube-system-traefik"),
        NamedResource("ConfigMap", "kube-system", "chart-values-traefik"),
        NamedResource("Job", "kube-system", "helm-install-traefik"),
    ]


def test_inline_content_objects(
    coredns: HelmChart, controller_config: HelmControllerConfig
) -> None:
    """Test a chart with inline content gets a content ConfigMap."""
    objects = build_objects(coredns, None, controller_config)
    assert objects.resource_ids == [
        NamedResource("ServiceAccount", "kube-system", "helm-coredns"),
        NamedResource("ClusterRoleBinding", None, "helm-kube-system-coredns"),
        NamedResource("ConfigMap", "kube-system", "chart-content-coredns"),
        NamedResource("ConfigMap", "kube-system", "chart-values-coredns"),
        NamedResource("Job", "kube-system", "helm-install-coredns"),
    ]
    content = objects.get(
        NamedResource("ConfigMap", "kube-system", "chart-content-coredns")
    )
    assert isinstance(content, ConfigMap)
    assert content.data == {"coredns.tgz.base64": coredns.chart_content}

    job = _job(coredns)
    assert [(volume.name, volume.config_map.name) for volume in job.template.volumes] == [
        ("values", "chart-values-coredns"),
        ("content", "chart-content-coredns"),
    ]
    assert [
        (mount.name, mount.mount_path)
        for mount in job.template.container.volume_mounts
    ] == [("values", "/config"), ("content", "/chart")]


def test_service_account_and_binding(
    traefik: HelmChart, controller_config: HelmControllerConfig
) -> None:
    """Test the installer identity and its cluster-admin binding."""
    objects = build_objects(traefik, None, controller_config)
    service_account = objects.get(
        NamedResource("ServiceAccount", "kube-system", "helm-traefik")
    )
    assert isinstance(service_account, ServiceAccount)
    assert service_account.automount_service_account_token

    binding = objects.get(
        NamedResource("ClusterRoleBinding", None, "helm-kube-system-traefik")
    )
    assert isinstance(binding, ClusterRoleBinding)
    assert binding.to_manifest() == {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": "helm-kube-system-traefik"},
        "roleRef": {
            "kind": "ClusterRole",
            "name": "cluster-admin",
            "apiGroup": "rbac.authorization.k8s.io",
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": "helm-traefik",
                "namespace": "kube-system",
            }
        ],
    }


def test_install_job(traefik: HelmChart) -> None:
    """Test the installer Job for a repository chart."""
    job = _job(traefik)
    assert job.name == "helm-install-traefik"
    assert job.namespace == "kube-system"
    assert job.labels == {"helmcharts.helm.cattle.io/chart": "traefik"}
    assert job.backoff_limit == 1000

    template = job.template
    assert template.labels == {"helmcharts.helm.cattle.io/chart": "traefik"}
    assert template.service_account_name == "helm-traefik"
    assert template.restart_policy == "OnFailure"
    assert template.node_selector == {"kubernetes.io/os": "linux"}
    assert template.host_network is None
    assert template.tolerations is None

    container = template.container
    assert container.name == "helm"
    assert container.image == DEFAULT_JOB_IMAGE
    assert container.image_pull_policy == "IfNotPresent"
    assert container.args[:7] == [
        "install",
        "--namespace",
        "traefik",
        "--repo",
        "https://traefik.github.io/charts",
        "--version",
        "10.19.300",
    ]


def test_install_job_env(traefik: HelmChart) -> None:
    """Test the installer environment in order."""
    job = _job(traefik)
    env = job.template.container.env
    assert [var.name for var in env] == [
        "NAME",
        "VERSION",
        "REPO",
        "REPO_USERNAME",
        "REPO_PASSWORD",
        "HELM_DRIVER",
        "CHART_NAMESPACE",
        "CHART",
        "HELM_VERSION",
        "TARGET_NAMESPACE",
        "TIMEOUT",
        "FAILURE_POLICY",
    ]
    assert _env(job) == {
        "NAME": "traefik",
        "VERSION": "10.19.300",
        "REPO": "https://traefik.github.io/charts",
        "REPO_USERNAME": None,
        "REPO_PASSWORD": None,
        "HELM_DRIVER": "secret",
        "CHART_NAMESPACE": "kube-system",
        "CHART": "traefik",
        "HELM_VERSION": "",
        "TARGET_NAMESPACE": "traefik",
        "TIMEOUT": "10m",
        "FAILURE_POLICY": "reinstall",
    }

    # Credentials are referenced from the secret, never read
    username = env[3].value_from
    password = env[4].value_from
    assert username is not None and password is not None
    assert username.secret_key_ref.name == "traefik-repo-auth"
    assert username.secret_key_ref.key == "username"
    assert password.secret_key_ref.key == "password"


def test_no_repo_secret() -> None:
    """Test the credential variables are empty without a repo secret."""
    chart = HelmChart(name="example", namespace="default", chart="example")
    job = _job(chart)
    env = {var.name: var for var in job.template.container.env}
    assert env["REPO_USERNAME"].value_from is None
    assert env["REPO_PASSWORD"].value_from is None
    assert "TIMEOUT" not in env
    assert env["TARGET_NAMESPACE"].value == "default"


def test_proxy_env() -> None:
    """Test proxy settings are passed through before the failure policy."""
    chart = HelmChart(name="example", namespace="default", chart="example")
    job = _job(
        chart,
        proxy_env={"HTTP_PROXY": "http://proxy:3128", "NO_PROXY": ".svc"},
    )
    names = [var.name for var in job.template.container.env]
    assert names[-3:] == ["HTTP_PROXY", "NO_PROXY", "FAILURE_POLICY"]
    assert _env(job)["HTTP_PROXY"] == "http://proxy:3128"


def test_controller_config_from_env() -> None:
    """Test only non-empty proxy variables are captured."""
    config = HelmControllerConfig.from_env(
        {"HTTPS_PROXY": "http://proxy", "no_proxy": "", "HOME": "/root"}
    )
    assert config.proxy_env == {"HTTPS_PROXY": "http://proxy"}
    assert config.default_job_image == DEFAULT_JOB_IMAGE
    assert config.default_failure_policy == "reinstall"


def test_bootstrap_job(coredns: HelmChart) -> None:
    """Test a bootstrap chart runs on the host network of a control plane node."""
    job = _job(coredns)
    template = job.template
    assert template.host_network
    assert template.node_selector == {
        "kubernetes.io/os": "linux",
        "node-role.kubernetes.io/control-plane": "true",
    }
    assert template.tolerations == BOOTSTRAP_TOLERATIONS
    env = _env(job)
    assert env["KUBERNETES_SERVICE_HOST"] == "127.0.0.1"
    assert env["KUBERNETES_SERVICE_PORT"] == "6443"
    assert env["BOOTSTRAP"] == "true"
    assert env["FAILURE_POLICY"] == "abort"
    assert env["CHART"] == ""


def test_job_image_override() -> None:
    """Test the chart may override the installer image."""
    chart = HelmChart(
        name="example", namespace="default", chart="example", job_image="custom:1"
    )
    assert _job(chart).template.container.image == "custom:1"

    chart = HelmChart(
        name="example", namespace="default", chart="example", job_image="  "
    )
    assert _job(chart).template.container.image == DEFAULT_JOB_IMAGE
    assert _job(chart, default_job_image="mirror:2").template.container.image == (
        "mirror:2"
    )


def test_values_layering(
    traefik: HelmChart, traefik_config: HelmChartConfig
) -> None:
    """Test the chart values sort before the HelmChartConfig values."""
    objects = build_objects(traefik, traefik_config, HelmControllerConfig())
    values = objects.get(
        NamedResource("ConfigMap", "kube-system", "chart-values-traefik")
    )
    assert isinstance(values, ConfigMap)
    assert sorted(values.data) == [
        "values-01_HelmChart.yaml",
        "values-10_HelmChartConfig.yaml",
    ]
    assert values.data["values-01_HelmChart.yaml"] == traefik.values_content
    assert values.data["values-10_HelmChartConfig.yaml"] == (
        traefik_config.values_content
    )


def test_repo_ca() -> None:
    """Test the repository CA bundle is written with the values."""
    chart = HelmChart(
        name="example", namespace="default", chart="example", repo_ca="---PEM---"
    )
    objects = build_objects(chart, None, HelmControllerConfig())
    values = objects.get(NamedResource("ConfigMap", "default", "chart-values-example"))
    assert isinstance(values, ConfigMap)
    assert values.data == {"ca-file.pem": "---PEM---"}


@pytest.mark.parametrize(
    ("chart_policy", "config_policy", "expected"),
    [
        (None, None, "reinstall"),
        ("abort", None, "abort"),
        (None, "abort", "abort"),
        ("reinstall", "abort", "abort"),
        ("abort", "reinstall", "reinstall"),
    ],
)
def test_failure_policy(
    chart_policy: str | None, config_policy: str | None, expected: str
) -> None:
    """Test the HelmChartConfig overrides the chart which overrides the default."""
    chart = HelmChart(
        name="example",
        namespace="default",
        chart="example",
        failure_policy=chart_policy,
    )
    config = HelmChartConfig(
        name="example", namespace="default", failure_policy=config_policy
    )
    assert effective_failure_policy(chart, config, "reinstall") == expected
    assert _env(_job(chart, config))["FAILURE_POLICY"] == expected


def test_config_digest_annotation(
    coredns: HelmChart, controller_config: HelmControllerConfig
) -> None:
    """Test the Job carries a digest of the values and content."""
    objects = build_objects(coredns, None, controller_config)
    job = objects.get(NamedResource("Job", "kube-system", "helm-install-coredns"))
    assert isinstance(job, Job)
    content = objects.get(
        NamedResource("ConfigMap", "kube-system", "chart-content-coredns")
    )
    values = objects.get(
        NamedResource("ConfigMap", "kube-system", "chart-values-coredns")
    )
    assert isinstance(content, ConfigMap) and isinstance(values, ConfigMap)
    annotations = job.template.annotations or {}
    assert annotations[CONFIG_HASH_ANNOTATION] == config_digest(content, values)
    assert annotations[CONFIG_HASH_ANNOTATION].startswith("SHA256=")


def test_digest_changes_with_config(
    traefik: HelmChart, traefik_config: HelmChartConfig
) -> None:
    """Test adding a HelmChartConfig changes the Job digest."""
    without_config = _job(traefik).template.annotations or {}
    with_config = _job(traefik, traefik_config).template.annotations or {}
    assert (
        without_config[CONFIG_HASH_ANNOTATION] != with_config[CONFIG_HASH_ANNOTATION]
    )


def test_build_idempotent(
    traefik: HelmChart,
    traefik_config: HelmChartConfig,
    controller_config: HelmControllerConfig,
) -> None:
    """Test building twice produces identical objects."""
    first = build_objects(traefik, traefik_config, controller_config)
    second = build_objects(traefik, traefik_config, controller_config)
    assert first.to_manifests() == second.to_manifests()
    assert yaml.dump_all(first.to_manifests()) == yaml.dump_all(
        second.to_manifests()
    )


def test_delete_job(controller_config: HelmControllerConfig) -> None:
    """Test a deleting chart builds the delete Job."""
    chart = HelmChart(
        name="example",
        namespace="default",
        chart="example",
        set_values={"a": 1},
        deletion_timestamp="2024-01-01T00:00:00Z",
    )
    objects = build_objects(chart, None, controller_config)
    assert NamedResource("Job", "default", "helm-delete-example") in objects
    assert NamedResource("Job", "default", "helm-install-example") not in objects
    job = _job(chart)
    assert job.template.container.args == ["delete"]
    assert job_name(chart, "install") == "helm-install-example"

"""Configuration for the HelmChart controller."""

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
import os

from chart_controller.manifest import FAILURE_POLICY_REINSTALL

_LOGGER = logging.getLogger(__name__)

DEFAULT_JOB_IMAGE = "rancher/klipper-helm:v0.7.1-build20220407"
DEFAULT_SET_ID = "helm-controller"

# Proxy settings of the controller process passed through to the installer
PROXY_ENV_VARS = [
    "all_proxy",
    "ALL_PROXY",
    "http_proxy",
    "HTTP_PROXY",
    "https_proxy",
    "HTTPS_PROXY",
    "no_proxy",
    "NO_PROXY",
]


def proxy_env(environ: Mapping[str, str]) -> dict[str, str]:
    """Return the non-empty proxy variables from the environment, in a fixed order."""
    return {name: environ[name] for name in PROXY_ENV_VARS if environ.get(name)}


@dataclass(frozen=True)
class HelmControllerConfig:
    """Configuration for the HelmChartController.

    Each HelmChart may override the job image and failure policy.
    """

    default_job_image: str = DEFAULT_JOB_IMAGE
    """Installer image used when the chart does not set one."""

    default_failure_policy: str = FAILURE_POLICY_REINSTALL
    """Failure policy used when neither the chart nor its config set one."""

    set_id: str = DEFAULT_SET_ID
    """Identifies the objects applied by this controller."""

    proxy_env: Mapping[str, str] = field(default_factory=dict)
    """Proxy variables copied into the installer environment."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "HelmControllerConfig":
        """Create a configuration capturing the proxy settings of the process."""
        if environ is None:
            environ = os.environ
        env = proxy_env(environ)
        if env:
            _LOGGER.debug("Passing proxy settings to installer jobs: %s", list(env))
        return cls(proxy_env=env)

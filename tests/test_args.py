"""Tests for the installer argument builder."""

from typing import Any

import pytest

from chart_controller.args import escape_commas, format_value, helm_args, typed_value
from chart_controller.manifest import HelmChart


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (1, True),
        (1.5, True),
        (True, True),
        (None, True),
        ("true", True),
        ("FALSE", True),
        ("Null", True),
        ("1", False),
        ("1.5", False),
        ("yes", False),
        ("a,b", False),
        ("", False),
    ],
)
def test_typed_value(value: Any, expected: bool) -> None:
    """Test which values are passed with --set."""
    assert typed_value(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (True, "true"),
        (False, "false"),
        (None, "null"),
        (3, "3"),
        ("TRUE", "TRUE"),
    ],
)
def test_format_value(value: Any, expected: str) -> None:
    """Test the command line form of a scalar override."""
    assert format_value(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("abc", "abc"),
        ("a,b", "a\\,b"),
        ("a\\,b", "a\\,b"),
        ("a\\\\,b", "a\\\\\\,b"),
        ("a,b,c", "a\\,b\\,c"),
        (",", "\\,"),
        ("a\\b", "a\\b"),
    ],
)
def test_escape_commas(value: str, expected: str) -> None:
    """Test commas are escaped unless already escaped."""
    assert escape_commas(value) == expected


def test_escape_commas_idempotent() -> None:
    """Test escaping an escaped value does not change it."""
    for value in ("a,b", "a\\\\,b", ",,", "x\\,y,z"):
        escaped = escape_commas(value)
        assert escape_commas(escaped) == escaped


def test_install_args() -> None:
    """Test the full install command line."""
    chart = HelmChart(
        name="traefik",
        namespace="kube-system",
        chart="traefik",
        repo="https://traefik.github.io/charts",
        version="10.19.300",
        target_namespace="traefik",
        set_values={
            "replicas": 2,
            "service.annotations.tags": "a,b,c",
            "rbac.enabled": "true",
            "image.tag": "v2.6",
        },
    )
    assert helm_args(chart) == [
        "install",
        "--namespace",
        "traefik",
        "--repo",
        "https://traefik.github.io/charts",
        "--version",
        "10.19.300",
        "--set-string",
        "image.tag=v2.6",
        "--set",
        "rbac.enabled=true",
        "--set",
        "replicas=2",
        "--set-string",
        "service.annotations.tags=a\\,b\\,c",
    ]


def test_install_args_minimal() -> None:
    """Test a chart with no optional flags."""
    chart = HelmChart(name="example", namespace="default", chart="example")
    assert helm_args(chart) == ["install"]


def test_install_args_ordering_stable() -> None:
    """Test overrides are emitted in sorted order regardless of input order."""
    first = HelmChart(
        name="example",
        namespace="default",
        chart="example",
        set_values={"b": "2", "a": 1, "c": None},
    )
    second = HelmChart(
        name="example",
        namespace="default",
        chart="example",
        set_values={"c": None, "a": 1, "b": "2"},
    )
    assert helm_args(first) == helm_args(second)
    assert helm_args(first) == [
        "install",
        "--set",
        "a=1",
        "--set-string",
        "b=2",
        "--set",
        "c=null",
    ]


def test_delete_args() -> None:
    """Test a deleting chart only passes the delete action."""
    chart = HelmChart(
        name="example",
        namespace="default",
        chart="example",
        repo="https://example.com/charts",
        set_values={"a": 1},
        deletion_timestamp="2024-01-01T00:00:00Z",
    )
    assert helm_args(chart) == ["delete"]

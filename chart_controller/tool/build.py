"""chart-controller build action."""

from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
    BooleanOptionalAction,
)
import dataclasses
import datetime
import logging
import pathlib
from typing import Any, cast

import aiofiles
import yaml

from chart_controller.exceptions import InputException
from chart_controller.helm_controller import HelmControllerConfig, build_objects
from chart_controller.manifest import HelmChart, HelmChartConfig, parse_raw_obj

_LOGGER = logging.getLogger(__name__)


async def read_objects(path: pathlib.Path) -> list[Any]:
    """Return the HelmChart and HelmChartConfig objects in a YAML file."""
    async with aiofiles.open(str(path)) as input_file:
        content = await input_file.read()
    try:
        docs = [doc for doc in yaml.safe_load_all(content) if doc]
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {path}: {err}") from err
    objects = []
    for doc in docs:
        obj = parse_raw_obj(doc)
        if isinstance(obj, (HelmChart, HelmChartConfig)):
            objects.append(obj)
        else:
            _LOGGER.debug("Ignoring %s in %s", doc.get("kind"), path)
    return objects


class BuildAction:
    """chart-controller build action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Build the objects applied for HelmChart resources",
                description="""Renders the ServiceAccount, ClusterRoleBinding,
                    ConfigMaps and Job the controller applies for each HelmChart
                    in the input file, layering any HelmChartConfig with the
                    same name.""",
            ),
        )
        args.add_argument(
            "path", type=pathlib.Path, help="Path to a file of HelmChart resources"
        )
        args.add_argument(
            "--config",
            type=pathlib.Path,
            default=None,
            help="Optional file of HelmChartConfig resources",
        )
        args.add_argument(
            "--delete",
            action=BooleanOptionalAction,
            default=False,
            help="Build the objects for deleting the charts instead of installing",
        )
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        config: pathlib.Path | None,
        delete: bool,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        objects = await read_objects(path)
        if config is not None:
            objects.extend(await read_objects(config))

        charts = [obj for obj in objects if isinstance(obj, HelmChart)]
        if not charts:
            raise InputException(f"No HelmChart found in {path}")
        chart_configs = {
            (obj.namespace, obj.name): obj
            for obj in objects
            if isinstance(obj, HelmChartConfig)
        }

        controller_config = HelmControllerConfig.from_env()
        manifests: list[dict[str, Any]] = []
        for chart in charts:
            if not chart.has_source or chart.unmanaged:
                _LOGGER.info("Skipping HelmChart %s", chart.namespaced_name)
                continue
            if delete and not chart.deleting:
                chart = dataclasses.replace(
                    chart,
                    deletion_timestamp=datetime.datetime.now(
                        datetime.timezone.utc
                    ).isoformat(),
                )
            chart_config = chart_configs.get((chart.namespace, chart.name))
            desired = build_objects(chart, chart_config, controller_config)
            manifests.extend(desired.to_manifests())

        with open(output_file, "w") as file:
            print(
                yaml.dump_all(manifests, sort_keys=False, explicit_start=True),
                file=file,
                end="",
            )

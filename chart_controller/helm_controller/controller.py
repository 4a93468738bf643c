"""HelmChart Controller implementation.

This controller reconciles HelmChart resources into an installer Job and the
objects the Job needs, and tracks the Job to completion when a chart is
deleted.

Key Concepts:
    - HelmChart: A request to install a chart, from a repository or inline
    - HelmChartConfig: Supplemental values layered onto the HelmChart of the same name
    - Applier: Owner-scoped apply that prunes objects no longer desired

Deleting a chart is a sequence of reconciles: the first creates the delete
Job, later ones report PENDING until the Job has succeeded, and the last
applies an empty object set which removes everything the chart owned.
"""

from collections.abc import Awaitable
import dataclasses
import logging

from chart_controller.exceptions import (
    ChartControllerException,
    JobReplacedError,
    ObjectNotFoundError,
)
from chart_controller.manifest import (
    BaseManifest,
    HelmChart,
    HelmChartConfig,
    HelmChartStatus,
    Job,
    KubeObject,
    NamedResource,
    ObjectSet,
    ACTION_DELETE,
    CHART_LABEL,
    HELM_CHART_KIND,
    HELM_CHART_CONFIG_KIND,
    JOB_KIND,
)
from chart_controller.store import (
    Applier,
    ObjectCache,
    Store,
    StoreApplier,
    StoreEvent,
    StoreObjectCache,
)
from chart_controller.task import get_task_service

from .config import HelmControllerConfig
from .desired import build_objects, job_name
from .result import Outcome, ReconcileResult

_LOGGER = logging.getLogger(__name__)


class HelmChartController:
    """
    Controller for reconciling HelmChart resources.

    The handlers are invoked by a work queue that never runs two handlers for
    the same chart at once. Any exception raised by a handler is retried by
    the queue.
    """

    def __init__(
        self,
        charts: ObjectCache[HelmChart],
        configs: ObjectCache[HelmChartConfig],
        jobs: ObjectCache[Job],
        applier: Applier,
        config: HelmControllerConfig,
    ) -> None:
        """
        Initialize the controller with its collaborators.

        Args:
            charts: Cache of HelmChart objects, also used to record status
            configs: Cache of HelmChartConfig objects
            jobs: Cache of installer Jobs
            applier: Applier for the desired objects of each chart
            config: The configuration for the controller
        """
        self._charts = charts
        self._configs = configs
        self._jobs = jobs
        self._config = config
        self._applier = applier.with_patcher(JOB_KIND, self._replace_job)
        # Charts with a reconcile task, and those changed again while it runs
        self._active: set[NamedResource] = set()
        self._dirty: set[NamedResource] = set()

    @classmethod
    def from_store(
        cls, store: Store, config: HelmControllerConfig
    ) -> "HelmChartController":
        """Create a controller whose collaborators are backed by the store."""
        return cls(
            charts=StoreObjectCache(store, HELM_CHART_KIND, HelmChart),
            configs=StoreObjectCache(store, HELM_CHART_CONFIG_KIND, HelmChartConfig),
            jobs=StoreObjectCache(store, JOB_KIND, Job),
            applier=StoreApplier(store, config.set_id),
            config=config,
        )

    def _replace_job(self, resource_id: NamedResource, desired: KubeObject) -> None:
        """Patch an existing Job by deleting it so the next apply recreates it.

        The pod template of a Job can't be changed after creation.
        """
        _LOGGER.info("Replacing Job %s", resource_id.namespaced_name)
        self._jobs.delete(resource_id.namespace or "", resource_id.name)
        raise JobReplacedError(resource_id.namespace or "", resource_id.name)

    def _skip_reason(self, chart: HelmChart) -> str | None:
        if not chart.has_source:
            return "no chart or chart content"
        if chart.unmanaged:
            return "unmanaged"
        return None

    def _get_config(self, chart: HelmChart) -> HelmChartConfig | None:
        try:
            return self._configs.get(chart.namespace, chart.name)
        except ObjectNotFoundError:
            return None

    def _record_job(self, chart: HelmChart, name: str) -> HelmChart:
        """Record the applied Job on the status of the current chart.

        The chart is read again since it may have changed while the objects
        were applied, and only the status is written back.
        """
        current = self._charts.get(chart.namespace, chart.name)
        updated = dataclasses.replace(current, status=HelmChartStatus(job_name=name))
        return self._charts.update(updated)

    async def on_chart_change(
        self, key: str, chart: HelmChart | None
    ) -> ReconcileResult:
        """Apply the desired objects for the chart and record the Job on its status."""
        if chart is None:
            return ReconcileResult(Outcome.SKIPPED)
        if reason := self._skip_reason(chart):
            _LOGGER.debug("Skipping HelmChart %s: %s", key, reason)
            return ReconcileResult(Outcome.SKIPPED, chart, reason)

        config = self._get_config(chart)
        objects = build_objects(chart, config, self._config)
        name = job_name(chart)
        _LOGGER.info(
            "Applying HelmChart %s using Job %s/%s", key, chart.namespace, name
        )
        await self._applier.apply(chart.resource_id, objects)
        return ReconcileResult(Outcome.DONE, self._record_job(chart, name))

    async def on_chart_remove(
        self, key: str, chart: HelmChart | None
    ) -> ReconcileResult:
        """Run the delete Job for the chart and remove its objects once it succeeds."""
        if chart is None:
            return ReconcileResult(Outcome.SKIPPED)
        if reason := self._skip_reason(chart):
            _LOGGER.debug("Skipping removal of HelmChart %s: %s", key, reason)
            return ReconcileResult(Outcome.SKIPPED, chart, reason)

        name = job_name(chart, ACTION_DELETE)
        waiting = f"waiting for delete of helm chart for {key} by {name}"
        try:
            job = self._jobs.get(chart.namespace, name)
        except ObjectNotFoundError:
            _LOGGER.debug("Delete Job %s for %s does not exist yet", name, key)
            result = await self.on_chart_change(key, chart)
            return ReconcileResult(Outcome.PENDING, result.obj, waiting)

        if job.status.succeeded <= 0:
            _LOGGER.debug("HelmChart %s is %s", key, waiting)
            return ReconcileResult(Outcome.PENDING, chart, waiting)

        updated = self._record_job(chart, job.name)
        _LOGGER.info("Delete Job %s succeeded, removing objects of %s", name, key)
        await self._applier.apply(chart.resource_id, ObjectSet())
        return ReconcileResult(Outcome.DONE, updated)

    async def on_config_change(
        self, key: str, config: HelmChartConfig | None
    ) -> ReconcileResult:
        """Request a reconcile of the HelmChart the config applies to."""
        if config is None:
            return ReconcileResult(Outcome.SKIPPED)
        try:
            self._charts.get(config.namespace, config.name)
        except ObjectNotFoundError:
            _LOGGER.debug("No HelmChart for HelmChartConfig %s", key)
            return ReconcileResult(Outcome.SKIPPED, config, "no matching HelmChart")
        self._charts.enqueue(config.namespace, config.name)
        return ReconcileResult(Outcome.DONE, config)

    async def handle(self, resource_id: NamedResource) -> ReconcileResult:
        """Reconcile the current state of a HelmChart.

        A chart is released once its removal completes, standing in for the
        finalizer the cluster would hold until then.
        """
        key = resource_id.namespaced_name
        try:
            chart = self._charts.get(resource_id.namespace or "", resource_id.name)
        except ObjectNotFoundError:
            _LOGGER.debug("HelmChart %s no longer exists", key)
            return ReconcileResult(Outcome.SKIPPED, message="not found")
        if not chart.deleting:
            return await self.on_chart_change(key, chart)

        result = await self.on_chart_remove(key, chart)
        if not result.pending:
            _LOGGER.info("Releasing HelmChart %s", key)
            self._charts.delete(chart.namespace, chart.name)
        return result

    def watch(self, store: Store) -> None:
        """Reconcile charts as objects in the store change."""
        store.add_listener(StoreEvent.OBJECT_ADDED, self._added_listener, flush=True)
        store.add_listener(StoreEvent.OBJECT_DELETED, self._deleted_listener)
        store.add_listener(StoreEvent.RECONCILE_REQUESTED, self._requested_listener)

    def _added_listener(
        self, resource_id: NamedResource, obj: BaseManifest | None
    ) -> None:
        if resource_id.kind == HELM_CHART_KIND:
            self._schedule(resource_id)
        elif resource_id.kind == HELM_CHART_CONFIG_KIND:
            self._config_listener(resource_id, obj)
        elif resource_id.kind == JOB_KIND:
            self._job_listener(resource_id, obj)

    def _deleted_listener(
        self, resource_id: NamedResource, obj: BaseManifest | None
    ) -> None:
        if resource_id.kind == HELM_CHART_CONFIG_KIND:
            self._config_listener(resource_id, obj)
        elif resource_id.kind == JOB_KIND:
            self._job_listener(resource_id, obj)

    def _requested_listener(
        self, resource_id: NamedResource, obj: BaseManifest | None
    ) -> None:
        if resource_id.kind == HELM_CHART_KIND:
            self._schedule(resource_id)

    def _config_listener(
        self, resource_id: NamedResource, obj: BaseManifest | None
    ) -> None:
        if not isinstance(obj, HelmChartConfig):
            return
        get_task_service().create_task(
            self._run(resource_id, self.on_config_change(resource_id.namespaced_name, obj)),
            name=f"config {resource_id}",
        )

    def _job_listener(self, resource_id: NamedResource, obj: BaseManifest | None) -> None:
        """Reconcile the chart an installer Job belongs to."""
        if not isinstance(obj, Job) or not (chart := (obj.labels or {}).get(CHART_LABEL)):
            return
        _LOGGER.debug("Job %s changed, enqueueing HelmChart %s", resource_id, chart)
        self._charts.enqueue(resource_id.namespace or "", chart)

    def _schedule(self, resource_id: NamedResource) -> None:
        """Start a reconcile of the chart unless one is already pending or running.

        A chart changed while its reconcile runs is reconciled once more after
        it finishes, so handlers for the same chart never overlap.
        """
        if resource_id in self._active:
            _LOGGER.debug("Reconcile of %s already in progress", resource_id)
            self._dirty.add(resource_id)
            return
        self._active.add(resource_id)
        get_task_service().create_task(
            self._reconcile(resource_id),
            name=f"reconcile {resource_id}",
        )

    async def _reconcile(self, resource_id: NamedResource) -> None:
        try:
            while True:
                self._dirty.discard(resource_id)
                await self._run(resource_id, self.handle(resource_id))
                if resource_id not in self._dirty:
                    break
        finally:
            self._active.discard(resource_id)
            self._dirty.discard(resource_id)

    async def _run(
        self, resource_id: NamedResource, handler: Awaitable[ReconcileResult]
    ) -> None:
        try:
            result = await handler
        except ChartControllerException as err:
            _LOGGER.warning("Failed to reconcile %s: %s", resource_id, str(err))
        except Exception as err:
            _LOGGER.exception("Failed to reconcile %s: %s", resource_id, str(err))
        else:
            if result.pending:
                _LOGGER.info("Reconcile of %s pending: %s", resource_id, result.message)

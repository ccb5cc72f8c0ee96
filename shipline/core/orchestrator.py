"""Deployment orchestrator: the central coordinator for pipeline runs.

The orchestrator wires the ArtifactBuilder, ArtifactRegistry,
EnvironmentProvisioner, HealthVerifier, AcceptanceSuite and RunLedger into
a single pipeline execution engine. Every run is an explicit state machine
(``RunStateMachine``); each transition is recorded in the ledger before the
run's snapshot in the ``RunRegistry`` is replaced.

Stages run in sequence. Build and Publish fan out per service onto a thread
pool. Once staging has been created, StagingTeardown runs on every exit
path before the run reaches a terminal state. Production rollouts hold an
``EnvironmentLeases`` lease on the environment id, which serializes them
across threads and processes, and are never rolled back automatically.

Each CLI invocation is a separate process, so a run this process is not
executing is always re-read from the ledger before it is promoted or
aborted, and the ledger refuses a run transition that does not start from
the recorded state.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, TypeVar

from shipline.backends import create_backend, create_registry
from shipline.config import PipelineSettings
from shipline.core.acceptance import AcceptanceSuite, SmokeAcceptanceSuite
from shipline.core.builder import ArtifactBuilder, SubprocessTestRunner
from shipline.core.errors import (
    AcceptanceError,
    BuildError,
    ErrorKind,
    HealthCheckTimeout,
    PipelineError,
    PromotionRejected,
    ProvisionError,
    RegistryError,
    RunAborted,
    RunNotFoundError,
)
from shipline.core.health import HealthVerifier
from shipline.core.leases import EnvironmentLeases, LeaseTimeout
from shipline.core.provisioner import EnvironmentProvisioner
from shipline.core.registry import ArtifactRegistry
from shipline.core.retry import RetryPolicy
from shipline.core.run_ledger import LedgerConflictError, RunLedger
from shipline.core.run_registry import RunRegistry
from shipline.core.state_machine import RunStateMachine, new_stage_plan
from shipline.models.artifacts import Artifact, format_ref
from shipline.models.config import PipelineConfig
from shipline.models.environments import (
    Environment,
    EnvironmentKind,
    EnvironmentSpec,
    ServiceDeployment,
)
from shipline.models.health import HealthReport
from shipline.models.runs import EventKind, PipelineRun, TriggerEvent, TriggerKind
from shipline.models.services import Service
from shipline.models.stages import (
    ABORTABLE_RUN_STATES,
    INTEGRATION_STAGES,
    PROMOTION_STAGES,
    RunState,
    StageError,
    StageName,
    StageStatus,
)
from shipline.monitor.projection import RunProjection

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ABORT_MESSAGE = "Aborted by operator"

# States in which a run is not executing anywhere.
_IDLE_RUN_STATES = frozenset({RunState.IDLE, RunState.AWAITING_PROMOTION})


class _StageFailed(Exception):
    """Internal signal: the run cannot continue past the current stage."""

    def __init__(self, error: StageError) -> None:
        super().__init__(error.describe())
        self.error = error


class DeploymentOrchestrator:
    """Runs integration and promotion pipelines.

    Parameters
    ----------
    builder, registry, provisioner, health_verifier, acceptance, ledger:
        Pipeline components. ``from_settings`` wires the default ones.
    config:
        Pipeline topology (services and branches).
    settings:
        Operational settings (deadlines, pool sizes, production id).
    runs:
        Run registry; a fresh one is created if omitted.
    leases:
        Cross-process leases; defaults to the ``leases`` table in the
        ledger's database.
    """

    def __init__(
        self,
        *,
        builder: ArtifactBuilder,
        registry: ArtifactRegistry,
        provisioner: EnvironmentProvisioner,
        health_verifier: HealthVerifier,
        acceptance: AcceptanceSuite,
        ledger: RunLedger,
        config: PipelineConfig | None = None,
        settings: PipelineSettings | None = None,
        runs: RunRegistry | None = None,
        leases: EnvironmentLeases | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.settings = settings or PipelineSettings()
        self.builder = builder
        self.registry = registry
        self.provisioner = provisioner
        self.health = health_verifier
        self.acceptance = acceptance
        self.ledger = ledger
        self.runs = runs or RunRegistry()
        self.state_machine = RunStateMachine(ledger)
        self.projection = RunProjection(ledger)

        self._events: queue.Queue[TriggerEvent] = queue.Queue()
        self._leases = leases or EnvironmentLeases(
            ledger.path,
            wait_timeout=self.settings.production_lease_wait_seconds,
            stale_after=self.settings.production_lease_stale_seconds,
        )
        # Guards claiming a run for execution, so promote/abort never race.
        self._claim_lock = threading.Lock()
        self._executing: set[str] = set()
        self._services_lock = threading.Lock()
        self._services: dict[str, Service] = {s.name: s for s in self.config.services}

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings | None = None,
        config: PipelineConfig | None = None,
        *,
        source_root: Path = Path("."),
    ) -> DeploymentOrchestrator:
        """Build an orchestrator with the default components for *settings*."""
        settings = settings or PipelineSettings()
        retry = RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )
        verifier = HealthVerifier(
            poll_interval=settings.health_poll_interval_seconds,
            jitter=settings.health_poll_jitter_seconds,
            consecutive_successes=settings.health_consecutive_successes,
            request_timeout=settings.health_request_timeout_seconds,
        )
        return cls(
            builder=ArtifactBuilder(
                SubprocessTestRunner(settings.test_command, settings.test_timeout_seconds),
                settings.build_log_dir,
                source_root=source_root,
            ),
            registry=create_registry(settings, retry),
            provisioner=EnvironmentProvisioner(
                create_backend(settings),
                timeout=settings.provision_timeout_seconds,
                poll_interval=settings.provision_poll_interval_seconds,
                retry_policy=retry,
            ),
            health_verifier=verifier,
            acceptance=SmokeAcceptanceSuite(
                verifier, deadline=settings.health_deadline_seconds
            ),
            ledger=RunLedger(settings.ledger_path),
            config=config,
            settings=settings,
        )

    def close(self) -> None:
        """Close the HTTP clients held by the health verifier and acceptance suite."""
        self.health.close()
        close_acceptance = getattr(self.acceptance, "close", None)
        if callable(close_acceptance):
            close_acceptance()

    def __enter__(self) -> DeploymentOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def enqueue(self, event: TriggerEvent) -> None:
        """Queue a source-control event for ``process_pending``."""
        logger.info(
            "Queued %s on %s at %s", event.event_kind.value, event.branch, event.commit
        )
        self._events.put(event)

    def process_pending(self) -> list[PipelineRun]:
        """Drain the event queue in trigger order.

        Pushes start concurrently on a bounded pool. A merge waits for every
        run started before it, so it can promote what they validated.
        """
        futures: list[Future[PipelineRun | None]] = []
        with ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_runs, thread_name_prefix="run"
        ) as pool:
            while True:
                try:
                    event = self._events.get_nowait()
                except queue.Empty:
                    break
                if event.event_kind == EventKind.MERGE:
                    wait(futures)
                futures.append(pool.submit(self.handle, event))
                if event.event_kind == EventKind.MERGE:
                    wait(futures)
        results = [f.result() for f in futures]
        return [run for run in results if run is not None]

    def handle(self, event: TriggerEvent) -> PipelineRun | None:
        """Dispatch one event synchronously. Returns the run it drove, if any."""
        if event.event_kind == EventKind.PUSH and event.branch == self.config.integration_branch:
            return self.start_integration_run(event.commit)
        if event.event_kind == EventKind.MERGE and event.branch == self.config.main_branch:
            return self._promote_merge(event.commit)
        logger.info(
            "Ignoring %s to %s: no pipeline is bound to it",
            event.event_kind.value,
            event.branch,
        )
        return None

    def _promote_merge(self, commit: str) -> PipelineRun:
        awaiting = [r for r in self.list_runs() if r.state == RunState.AWAITING_PROMOTION]
        if not awaiting:
            logger.warning("Merge %s to %s has no validated run to promote", commit, self.config.main_branch)
            return self.promote_versions({}, commit=commit)
        match = next((r for r in awaiting if r.commit == commit), awaiting[0])
        logger.info("Merge %s promotes run %s (commit %s)", commit, match.run_id, match.commit)
        return self.promote(match.run_id)

    # ------------------------------------------------------------------
    # Integration runs
    # ------------------------------------------------------------------

    def start_integration_run(
        self, commit: str, services: Iterable[str] | None = None
    ) -> PipelineRun:
        """Build, publish and validate on staging. Returns the resting run.

        A successful run rests in AWAITING_PROMOTION.
        """
        selected = self._select_services(services)
        run = PipelineRun(
            trigger_kind=TriggerKind.PUSH_TO_INTEGRATION,
            commit=commit,
            stages=new_stage_plan(INTEGRATION_STAGES),
        )
        with self._claim_lock:
            self.runs.register(run)
            self.state_machine.open(run)
            self._executing.add(run.run_id)
        logger.info(
            "Run %s started for %s (%s)", run.run_id, commit, ", ".join(s.name for s in selected)
        )
        return self._execute(run.run_id, lambda: self._integrate(run, selected))

    def _integrate(self, run: PipelineRun, services: list[Service]) -> None:
        run_id = run.run_id

        self._checkpoint(run)
        run = self._advance(run, RunState.BUILDING)
        run, artifacts = self._run_stage(
            run,
            StageName.BUILD,
            lambda: self._build_all(run_id, services),
            refs=lambda built: [a.ref for a in built],
        )
        run = self.runs.save(
            run.model_copy(update={"artifacts": {a.service_name: a.version for a in artifacts}})
        )

        self._checkpoint(run)
        run = self._advance(run, RunState.PUBLISHING)
        run, _ = self._run_stage(
            run,
            StageName.PUBLISH,
            lambda: self._publish_all(run_id, artifacts),
            refs=lambda _: [a.ref for a in artifacts],
        )

        self._checkpoint(run)
        environment_id = f"{self.config.staging_prefix}-{run_id}"
        run = self._advance(
            run,
            RunState.STAGING_UP,
            detail={"staging_environment_id": environment_id},
            staging_environment_id=environment_id,
        )
        versions = dict(run.artifacts)
        run, environment = self._run_stage(
            run,
            StageName.STAGING_DEPLOY,
            lambda: self._deploy_staging(environment_id, services, versions),
        )

        try:
            run = self._advance(run, RunState.TESTING)
            self._checkpoint(run)
            run, _ = self._run_stage(
                run,
                StageName.ACCEPTANCE_TEST,
                lambda: self._accept(run_id, environment, services),
                refs=lambda _: [format_ref(s, v) for s, v in sorted(versions.items())],
            )
        finally:
            run = self._teardown(run_id, environment_id)

        self._checkpoint(run)
        self._advance(run, RunState.AWAITING_PROMOTION)
        logger.info("Run %s validated on staging; awaiting promotion", run_id)

    def _build_all(self, run_id: str, services: list[Service]) -> list[Artifact]:
        workers = max(1, min(self.settings.max_parallel_builds, len(services)))
        artifacts: list[Artifact] = []
        failures: list[BuildError] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="build") as pool:
            futures = [pool.submit(self.builder.build, service) for service in services]
            for future in futures:
                try:
                    artifacts.append(future.result())
                except BuildError as exc:
                    failures.append(exc)

        if failures:
            kind = (
                ErrorKind.TEST_FAILURE
                if any(f.kind == ErrorKind.TEST_FAILURE for f in failures)
                else ErrorKind.BUILD_ERROR
            )
            raise BuildError(
                "; ".join(f.message for f in failures),
                kind=kind,
                services=sorted({name for f in failures for name in f.services}),
            )
        self._raise_if_aborted(run_id)
        return artifacts

    def _publish_all(self, run_id: str, artifacts: list[Artifact]) -> None:
        def publish(artifact: Artifact) -> None:
            if self.registry.exists(artifact.service_name, artifact.version):
                logger.info("%s is already published; skipping push", artifact.ref)
                return
            self.registry.push(artifact)

        workers = max(1, min(self.settings.max_parallel_builds, len(artifacts)))
        failures: list[PipelineError] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="publish") as pool:
            futures = [pool.submit(publish, artifact) for artifact in artifacts]
            for future in futures:
                try:
                    future.result()
                except PipelineError as exc:
                    failures.append(exc)

        if len(failures) == 1:
            raise failures[0]
        if failures:
            raise RegistryError(
                "; ".join(f.message for f in failures),
                services=sorted({name for f in failures for name in f.services}),
            )
        self._raise_if_aborted(run_id)

    def _deploy_staging(
        self, environment_id: str, services: list[Service], versions: dict[str, str]
    ) -> Environment:
        deployments = [self._deployment(s, versions[s.name]) for s in services]
        spec = EnvironmentSpec(
            services=deployments,
            databases=[s.database for s in services if s.database],
        )
        return self.provisioner.create(EnvironmentKind.STAGING, spec, environment_id)

    def _accept(self, run_id: str, environment: Environment, services: list[Service]) -> None:
        result = self.acceptance.run(environment, services)
        self._raise_if_aborted(run_id)
        if not result.passed:
            raise AcceptanceError(
                "; ".join(result.failures), services=result.failing_services
            )

    def _teardown(self, run_id: str, environment_id: str) -> PipelineRun:
        """Destroy staging. A failure is recorded on the stage and logged only."""
        run = self.runs.get(run_id)
        if run.state == RunState.TESTING:
            run = self._advance(run, RunState.STAGING_DOWN)
        try:
            self._run_stage(
                run,
                StageName.STAGING_TEARDOWN,
                lambda: self.provisioner.destroy(environment_id),
            )
        except _StageFailed as failed:
            logger.warning(
                "Run %s: staging %s was not torn down: %s",
                run_id,
                environment_id,
                failed.error.message,
            )
        except Exception:
            logger.warning(
                "Run %s: staging %s teardown crashed", run_id, environment_id, exc_info=True
            )
        return self.runs.get(run_id)

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def promote(self, run_id: str) -> PipelineRun:
        """Roll an AWAITING_PROMOTION run out to production.

        Raises ``PromotionRejected`` if the run is not awaiting promotion.
        A run whose artifacts never passed acceptance fails with a
        PROMOTION_REJECTED error instead of deploying.
        """
        with self._claim_lock:
            run = self._latest(run_id)
            if run.state != RunState.AWAITING_PROMOTION or run_id in self._executing:
                raise PromotionRejected(
                    f"Run {run_id} is {run.state.value}, not awaiting promotion"
                )
            self._executing.add(run_id)
        return self._execute(run_id, lambda: self._promote(run))

    def promote_versions(self, versions: dict[str, str], *, commit: str = "") -> PipelineRun:
        """Promote an explicit ``service -> version`` set in a new run."""
        unknown = sorted(set(versions) - set(self._services))
        if unknown:
            raise PromotionRejected(f"Unknown services: {', '.join(unknown)}", services=unknown)

        run = PipelineRun(
            trigger_kind=TriggerKind.PROMOTION_TO_MAIN,
            commit=commit,
            stages=new_stage_plan(PROMOTION_STAGES),
            artifacts=dict(versions),
        )
        self.runs.register(run)
        self.state_machine.open(run)
        self._advance(run, RunState.AWAITING_PROMOTION)
        return self.promote(run.run_id)

    def _promote(self, run: PipelineRun) -> None:
        self._checkpoint(run)

        verified = self.ledger.verified_artifacts()
        unverified = sorted(
            format_ref(service, version)
            for service, version in run.artifacts.items()
            if (service, version) not in verified
        )
        if unverified or not run.artifacts:
            message = (
                f"Never passed acceptance: {', '.join(unverified)}"
                if unverified
                else "No validated artifacts to promote"
            )
            logger.warning("Run %s promotion rejected: %s", run.run_id, message)
            raise _StageFailed(
                StageError(
                    stage=StageName.PRODUCTION_DEPLOY,
                    kind=ErrorKind.PROMOTION_REJECTED,
                    message=message,
                    services=sorted({ref.partition("@")[0] for ref in unverified}),
                )
            )

        services = [self._services[name] for name in sorted(run.artifacts)]
        versions = dict(run.artifacts)
        refs = [format_ref(s, v) for s, v in sorted(versions.items())]
        production_id = self.settings.production_environment_id

        try:
            with self._leases.hold(production_id):
                run = self._advance(run, RunState.PRODUCTION_DEPLOYING)
                run, environment = self._run_stage(
                    run,
                    StageName.PRODUCTION_DEPLOY,
                    lambda: self._deploy_production(production_id, services, versions),
                    refs=lambda _: refs,
                )
                run = self._advance(run, RunState.PRODUCTION_VERIFYING)
                run, _ = self._run_stage(
                    run,
                    StageName.PRODUCTION_VERIFY,
                    lambda: self._verify_production(environment, services),
                    refs=lambda _: refs,
                )
                self._advance(run, RunState.SUCCEEDED)
        except LeaseTimeout as exc:
            raise _StageFailed(
                StageError(
                    stage=StageName.PRODUCTION_DEPLOY, kind=exc.kind, message=exc.message
                )
            ) from exc
        self._record_current_versions(versions)
        logger.info("Run %s is live in %s", run.run_id, production_id)

    def _deploy_production(
        self, production_id: str, services: list[Service], versions: dict[str, str]
    ) -> Environment:
        if self.provisioner.get(production_id) is None:
            raise ProvisionError(
                f"Production environment {production_id} does not exist; "
                "run `shipline bootstrap` first"
            )
        deployments = [self._deployment(s, versions[s.name]) for s in services]
        return self.provisioner.update(production_id, deployments)

    def _verify_production(
        self, environment: Environment, services: list[Service]
    ) -> HealthReport:
        deadline = self.settings.health_deadline_seconds
        report = self.health.wait_healthy(environment, services, deadline)
        if not report.healthy:
            self.provisioner.mark_degraded(environment.identifier)
            raise HealthCheckTimeout(
                f"{environment.identifier} not healthy within {deadline:.0f}s",
                services=report.failing,
            )
        return report

    def _record_current_versions(self, versions: dict[str, str]) -> None:
        with self._services_lock:
            for name, version in versions.items():
                self._services[name] = self._services[name].model_copy(
                    update={"current_version": version}
                )

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def bootstrap(self) -> Environment:
        """Create the persistent production environment: network and databases.

        Services are deployed into it by the first promotion.
        """
        production_id = self.settings.production_environment_id
        existing = self.provisioner.get(production_id)
        if existing is not None:
            logger.info("Production environment %s already exists", production_id)
            return existing
        spec = EnvironmentSpec(
            databases=[s.database for s in self.config.services if s.database],
        )
        return self.provisioner.create(EnvironmentKind.PRODUCTION, spec, production_id)

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    def abort(self, run_id: str) -> bool:
        """Request an abort. Returns False when the run can no longer be stopped.

        A run this process is executing stops at its next stage boundary,
        tearing staging down first; once its promotion has been claimed it
        can no longer be aborted. A run that is not executing here can only
        be aborted while it is idle or awaiting promotion, and is aborted
        immediately. Runs mid-pipeline in another process must be aborted
        from that process.
        """
        with self._claim_lock:
            run = self._latest(run_id)
            if run.state not in ABORTABLE_RUN_STATES:
                logger.warning("Run %s cannot be aborted in %s", run_id, run.state.value)
                return False
            local = run_id in self._executing
            if local and run.state == RunState.AWAITING_PROMOTION:
                logger.warning("Run %s cannot be aborted: its promotion has started", run_id)
                return False
            if not local and run.state not in _IDLE_RUN_STATES:
                logger.warning(
                    "Run %s is %s in another process; abort it there",
                    run_id,
                    run.state.value,
                )
                return False
            logger.info("Abort requested for run %s", run_id)
            if local:
                self.runs.request_abort(run_id)
                return True
            try:
                self._finish(
                    run_id,
                    StageError(
                        stage=self._next_stage(run),
                        kind=ErrorKind.ABORTED,
                        message=_ABORT_MESSAGE,
                    ),
                )
            except LedgerConflictError as exc:
                logger.warning("Run %s moved on before the abort: %s", run_id, exc)
                self._reload(run_id)
                return False
        return True

    def _checkpoint(self, run: PipelineRun) -> None:
        if self.runs.abort_requested(run.run_id):
            raise _StageFailed(
                StageError(
                    stage=self._next_stage(run),
                    kind=ErrorKind.ABORTED,
                    message=_ABORT_MESSAGE,
                )
            )

    def _raise_if_aborted(self, run_id: str) -> None:
        if self.runs.abort_requested(run_id):
            raise RunAborted(_ABORT_MESSAGE)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, run_id: str) -> PipelineRun:
        """Latest snapshot of a run, from the ledger unless this process drives it."""
        with self._claim_lock:
            return self._latest(run_id)

    def list_runs(self) -> list[PipelineRun]:
        """Every known run, most recently started first."""
        snapshots = []
        for run_id in self.ledger.get_all_run_ids():
            with self._claim_lock:
                snapshots.append(self._latest(run_id))
        return snapshots

    def services(self) -> list[Service]:
        with self._services_lock:
            return list(self._services.values())

    # ------------------------------------------------------------------
    # Execution plumbing
    # ------------------------------------------------------------------

    def _execute(self, run_id: str, body: Callable[[], None]) -> PipelineRun:
        try:
            body()
        except _StageFailed as failed:
            self._finish(run_id, failed.error)
        except LedgerConflictError as exc:
            logger.warning("Run %s was advanced by another process: %s", run_id, exc)
            return self._reload(run_id)
        except Exception as exc:
            logger.exception("Run %s crashed", run_id)
            run = self.runs.get(run_id)
            self._finish(
                run_id,
                StageError(
                    stage=self._blamed_stage(run),
                    kind=ErrorKind.INTERNAL,
                    message=f"{type(exc).__name__}: {exc}",
                ),
            )
            raise
        finally:
            with self._claim_lock:
                self._executing.discard(run_id)
        return self.runs.get(run_id)

    def _run_stage(
        self,
        run: PipelineRun,
        name: StageName,
        work: Callable[[], T],
        *,
        refs: Callable[[T], list[str]] | None = None,
    ) -> tuple[PipelineRun, T]:
        """Run *work* as stage *name*, recording its outcome."""
        run = self.runs.save(self.state_machine.set_stage(run, name, StageStatus.RUNNING))
        try:
            result = work()
        except PipelineError as exc:
            error = StageError(
                stage=name, kind=exc.kind, message=exc.message, services=exc.services
            )
            logger.error("Run %s failed: %s", run.run_id, error.describe())
            self.runs.save(
                self.state_machine.set_stage(run, name, StageStatus.FAILED, error=error)
            )
            raise _StageFailed(error) from exc
        except Exception as exc:
            error = StageError(
                stage=name, kind=ErrorKind.INTERNAL, message=f"{type(exc).__name__}: {exc}"
            )
            self.runs.save(
                self.state_machine.set_stage(run, name, StageStatus.FAILED, error=error)
            )
            raise

        run = self.runs.save(
            self.state_machine.set_stage(
                run,
                name,
                StageStatus.SUCCEEDED,
                artifact_references=refs(result) if refs is not None else None,
            )
        )
        return run, result

    def _advance(self, run: PipelineRun, target: RunState, **kwargs: Any) -> PipelineRun:
        return self.runs.save(self.state_machine.advance(run, target, **kwargs))

    def _finish(self, run_id: str, error: StageError) -> PipelineRun:
        run = self.runs.get(run_id)
        if run.is_terminal:
            return run
        target = RunState.ABORTED if error.kind == ErrorKind.ABORTED else RunState.FAILED
        run = self._advance(run, target, failure=error)
        run = self.runs.save(self.state_machine.skip_remaining(run))
        logger.info("Run %s finished %s (exit %d)", run_id, run.status.value, run.exit_code)
        return run

    def _latest(self, run_id: str) -> PipelineRun:
        """Current snapshot of *run_id*. Call with ``_claim_lock`` held."""
        if run_id in self._executing:
            return self.runs.get(run_id)
        return self._reload(run_id)

    def _reload(self, run_id: str) -> PipelineRun:
        """Replace the local snapshot with the one recorded in the ledger."""
        restored = self.projection.restore(run_id)
        local = self.runs.find(run_id)
        if restored is None:
            if local is None:
                raise RunNotFoundError(run_id)
            return local
        if local is None:
            return self.runs.register(restored)
        return self.runs.save(restored)

    def _select_services(self, names: Iterable[str] | None) -> list[Service]:
        if names is None:
            return self.services()
        with self._services_lock:
            try:
                return [self._services[name] for name in names]
            except KeyError as exc:
                raise ValueError(f"Unknown service: {exc.args[0]}") from None

    def _deployment(self, service: Service, version: str) -> ServiceDeployment:
        image = self.registry.pull(service.name, version)
        return ServiceDeployment(
            name=service.name,
            version=version,
            image=image.reference,
            port=service.port,
            database=service.database,
        )

    @staticmethod
    def _next_stage(run: PipelineRun) -> StageName:
        """The first stage that has not started yet."""
        for execution in run.stages:
            if execution.status == StageStatus.PENDING:
                return execution.name
        return run.stages[-1].name if run.stages else StageName.BUILD

    @classmethod
    def _blamed_stage(cls, run: PipelineRun) -> StageName:
        """The stage an unexpected crash is attributed to."""
        for execution in run.stages:
            if execution.status == StageStatus.RUNNING:
                return execution.name
        failed = [e for e in run.stages if e.status == StageStatus.FAILED and e.finished_at]
        if failed:
            return max(failed, key=lambda e: e.finished_at).name
        return cls._next_stage(run)

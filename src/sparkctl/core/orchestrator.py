"""
Distributed run orchestration for sparkctl.

A run starts telemetry on the coordinator and on every worker under one
run identifier, submits the LDA job, waits for Spark's own cleanup to show
up in the samples, and stops telemetry everywhere. Worker telemetry is
best-effort: a worker that cannot be reached is logged and skipped, and the
job's exit status is reported regardless of telemetry failures.
"""
import asyncio
import fcntl
import shlex
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from ..cluster.daemons import master_url
from ..cluster.membership import MembershipRegistry
from ..cluster.remote import RemoteCommandChannel
from ..config.loader import LocalRunProfile
from ..telemetry.controller import TelemetryController
from ..utils.exceptions import (
    LaunchFailure,
    RemoteError,
    RunInProgress,
    SparkCtlError,
    StorageError,
    ValidationError
)
from ..utils.logging import get_logger
from .memory import compute_local_run_budget, read_total_memory_mb

logger = get_logger(__name__)

SPARK_SUBMIT = Path("bin") / "spark-submit"
ALGORITHMS = ("online", "em")
RUN_LOG = "stdlogs"
LOCK_FILE = ".sparkctl-run.lock"

JobRunner = Callable[[Sequence[str], Path], Awaitable[int]]


class RunState(str, Enum):
    """Orchestrator lifecycle. FAILED is absorbing."""
    IDLE = "idle"
    TELEMETRY_STARTING = "telemetry_starting"
    RUNNING = "running"
    TELEMETRY_STOPPING = "telemetry_stopping"
    FAILED = "failed"


@dataclass
class JobSpec:
    """Arguments of one LDA job submission."""
    engine_dir: Path
    train_dir: str
    target_dir: str
    k: int
    iterations: int
    algorithm: str

    def __post_init__(self):
        self.engine_dir = Path(self.engine_dir)

    @property
    def spark_submit(self) -> Path:
        return self.engine_dir / SPARK_SUBMIT

    def validate(self) -> None:
        """
        Raises:
            ValidationError: Not a Spark install, or bad job arguments
        """
        if not self.spark_submit.is_file():
            raise ValidationError(f"{self.engine_dir} does not seem to be a Spark installation")
        if not self.train_dir or not self.target_dir:
            raise ValidationError("Training and target data directories are required")
        if self.k <= 0:
            raise ValidationError(f"Number of topics must be positive: {self.k}")
        if self.iterations <= 0:
            raise ValidationError(f"Number of iterations must be positive: {self.iterations}")
        if self.algorithm not in ALGORITHMS:
            raise ValidationError(
                f"Unknown algorithm '{self.algorithm}', expected one of: {', '.join(ALGORITHMS)}"
            )

    def app_args(self) -> List[str]:
        return [self.train_dir, self.target_dir, str(self.k), str(self.iterations), self.algorithm]


@dataclass
class RunResult:
    """Outcome of one orchestrated run."""
    run_id: str
    run_dir: Path
    exit_status: int
    workers: List[str] = field(default_factory=list)
    start_failures: Dict[str, Exception] = field(default_factory=dict)
    stop_failures: Dict[str, Exception] = field(default_factory=dict)
    local_stop_errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_status == 0


def make_run_id(moment: datetime) -> str:
    """Second-precision run identifier shared by coordinator and workers."""
    return moment.strftime("%Y-%m-%d-%H-%M-%S")


class RunLock:
    """Advisory lock so only one run uses a data root at a time."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None

    def __enter__(self) -> "RunLock":
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "a")
        except OSError as e:
            raise StorageError(self.path, str(e)) from e
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._file.close()
            self._file = None
            raise RunInProgress(self.path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._file is not None:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            self._file.close()
            self._file = None


async def run_job(argv: Sequence[str], log_path: Path, echo: bool = True) -> int:
    """
    Run a job, appending its combined output to log_path.

    Output is appended rather than overwritten so a retried run keeps the
    earlier attempt's log.

    Returns:
        The job's exit status

    Raises:
        LaunchFailure: If the job could not be started
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise LaunchFailure(argv[0], str(e)) from e

    with open(log_path, "ab") as log:
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            log.write(line)
            log.flush()
            if echo:
                sys.stdout.buffer.write(line)
                sys.stdout.flush()

    return await process.wait()


class DistributedRunOrchestrator:
    """Runs a job with correlated telemetry on the coordinator and all workers."""

    def __init__(
        self,
        telemetry: TelemetryController,
        registry: MembershipRegistry,
        channel: RemoteCommandChannel,
        data_root: Path,
        app_jar: Path,
        coordinator_address: Callable[[], str],
        master_port: int = 7077,
        cooldown_seconds: float = 15,
        remote_command: str = "sparkctl",
        local_profile: Optional[LocalRunProfile] = None,
        total_memory_mb: Callable[[], int] = read_total_memory_mb,
        job_runner: JobRunner = run_job,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        """
        Initialize orchestrator.

        Args:
            telemetry: Local telemetry controller
            registry: Cluster membership, read once per run
            channel: SSH channel to workers
            data_root: Directory holding every node's run directories
            app_jar: LDA application jar
            coordinator_address: Resolves the master's private address
            master_port: Spark master service port
            cooldown_seconds: Wait after the job before stopping telemetry
            remote_command: sparkctl invocation on workers
            local_profile: Memory ratios for local runs
            total_memory_mb: Host RAM probe
            job_runner: Coroutine running argv and logging to a file
            clock: Wall clock for run identifiers
            sleep: Coroutine used for the cool-down
        """
        self.telemetry = telemetry
        self.registry = registry
        self.channel = channel
        self.data_root = Path(data_root)
        self.app_jar = Path(app_jar)
        self.coordinator_address = coordinator_address
        self.master_port = master_port
        self.cooldown_seconds = cooldown_seconds
        self.remote_command = remote_command
        self.local_profile = local_profile or LocalRunProfile()
        self.total_memory_mb = total_memory_mb
        self.job_runner = job_runner
        self.clock = clock
        self.sleep = sleep

        self.state = RunState.IDLE
        self.logger = get_logger(__name__)

    def _transition(self, state: RunState) -> None:
        self.logger.debug(f"State: {self.state.value} -> {state.value}")
        self.state = state

    def master_run_dir(self, run_id: str) -> Path:
        return self.data_root / f"master-{run_id}"

    def worker_run_dir(self, address: str, run_id: str) -> Path:
        return self.data_root / f"slave-{address}-{run_id}"

    def start_metrics_command(self, address: str, run_id: str) -> str:
        run_dir = shlex.quote(str(self.worker_run_dir(address, run_id)))
        return f"{self.remote_command} start-metrics {run_dir}"

    def stop_metrics_command(self) -> str:
        return f"{self.remote_command} stop-metrics"

    def build_submit_command(self, spec: JobSpec, cluster_mode: bool) -> List[str]:
        """
        spark-submit argv.

        Local runs pass the driver limits explicitly. Cluster runs rely on
        the memory settings in conf/spark-env.sh and target the master.
        """
        argv = [str(spec.spark_submit)]

        if cluster_mode:
            argv += ["--master", master_url(self.coordinator_address(), self.master_port)]
        else:
            budget = compute_local_run_budget(self.total_memory_mb(), self.local_profile)
            argv += [
                "--driver-memory", f"{budget.driver_mb}M",
                "--conf", f"spark.driver.maxResultSize={budget.max_result_size_mb}M",
            ]

        return argv + [str(self.app_jar)] + spec.app_args()

    async def _fan_out(
        self,
        workers: List[str],
        command_for: Callable[[str], str],
        action: str
    ) -> Dict[str, Exception]:
        """Run a command on every worker concurrently. Failures are returned, not raised."""

        async def run_on(address: str) -> None:
            self.logger.info(f"{action} on {address}")
            await self.channel.execute(address, command_for(address))

        results = await asyncio.gather(
            *(run_on(address) for address in workers),
            return_exceptions=True
        )

        failures: Dict[str, Exception] = {}
        for address, result in zip(workers, results):
            if isinstance(result, RemoteError):
                self.logger.warning(f"{action} failed on {address}: {result}")
                failures[address] = result
            elif isinstance(result, Exception):
                self.logger.error(f"{action} failed on {address} unexpectedly: {result}")
                failures[address] = result
            elif isinstance(result, BaseException):
                raise result

        return failures

    async def run(self, spec: JobSpec, cluster_mode: bool = False) -> RunResult:
        """
        Execute one job run with correlated telemetry.

        Args:
            spec: Job arguments
            cluster_mode: Submit to the standalone master and drive worker telemetry

        Returns:
            RunResult carrying the job's exit status and per-worker telemetry failures

        Raises:
            ValidationError: Bad arguments or missing install; nothing launched
            InsufficientMemory: Local run cannot be sized; nothing launched
            RunInProgress: Another run holds the data root
            DirectoryExists, AlreadyRunning: Local telemetry could not start
        """
        if self.state is not RunState.IDLE:
            raise SparkCtlError(f"Cannot start a run while orchestrator is {self.state.value}")

        spec.validate()
        if not self.app_jar.is_file():
            raise ValidationError(f"Application jar not found: {self.app_jar}")

        # Sizing and address resolution happen before anything is launched
        argv = self.build_submit_command(spec, cluster_mode)

        with RunLock(self.data_root / LOCK_FILE):
            run_id = make_run_id(self.clock())
            run_dir = self.master_run_dir(run_id)
            workers = self.registry.list() if cluster_mode else []
            result = RunResult(run_id=run_id, run_dir=run_dir, exit_status=-1, workers=workers)

            self.logger.info(
                f"Run {run_id}: {'cluster' if cluster_mode else 'local'} mode, "
                f"{len(workers)} worker(s)"
            )

            self._transition(RunState.TELEMETRY_STARTING)
            try:
                self.telemetry.start(run_dir)
            except SparkCtlError:
                self._transition(RunState.FAILED)
                raise

            completed = False
            try:
                result.start_failures = await self._fan_out(
                    workers,
                    lambda address: self.start_metrics_command(address, run_id),
                    "Starting metrics"
                )

                self._transition(RunState.RUNNING)
                self.logger.info(f"Submitting job: {' '.join(argv)}")
                result.exit_status = await self.job_runner(argv, run_dir / RUN_LOG)
                self.logger.info(f"Job finished with exit code {result.exit_status}")

                # Let memory and disk cleanup show up in the last samples
                await self.sleep(self.cooldown_seconds)
                completed = True
            finally:
                self._transition(RunState.TELEMETRY_STOPPING)
                report = self.telemetry.stop()
                result.local_stop_errors = dict(report.errors)
                result.stop_failures = await self._fan_out(
                    workers,
                    lambda address: self.stop_metrics_command(),
                    "Stopping metrics"
                )
                self._transition(RunState.IDLE if completed else RunState.FAILED)

        return result

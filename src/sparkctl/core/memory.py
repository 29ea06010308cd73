"""
Memory budgets for Spark daemons, executors and drivers.

In cluster mode the coordinator runs four JVMs: the master daemon, the
worker daemon, one executor and the driver. The daemons only do job
management and get a small fixed heap. The executor does the computation
and the LDA driver performs a large collect, so both split what is left
after the OS/NFS/cache reserve.
"""
import math
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from ..config.loader import ClusterMemoryProfile, LocalRunProfile
from ..utils.exceptions import InsufficientMemory, StorageError, ValidationError
from ..utils.logging import get_logger

logger = get_logger(__name__)

SPARK_ENV_TEMPLATE = Path("conf") / "spark-env.sh.template"
SPARK_ENV_FILE = Path("conf") / "spark-env.sh"


@dataclass(frozen=True)
class MemoryBudget:
    """Heap sizes in MB for a cluster-mode coordinator."""
    daemon_mb: int
    executor_mb: int
    driver_mb: int


@dataclass(frozen=True)
class LocalRunBudget:
    """Driver limits in MB for a single-node run."""
    driver_mb: int
    max_result_size_mb: int


def read_total_memory_mb() -> int:
    """Total host RAM in MB."""
    return psutil.virtual_memory().total // (1024 * 1024)


def compute_cluster_budget(
    total_mb: int,
    profile: Optional[ClusterMemoryProfile] = None
) -> MemoryBudget:
    """
    Split host memory between the daemons, the executor and the driver.

    Args:
        total_mb: Total host memory in MB
        profile: Reserve settings (defaults: 8192MB OS, 1024MB per daemon)

    Returns:
        MemoryBudget

    Raises:
        InsufficientMemory: If nothing is left after the reserves
    """
    profile = profile or ClusterMemoryProfile()

    # master and worker daemons each get the daemon reserve
    remaining_mb = total_mb - profile.os_reserve_mb - 2 * profile.daemon_reserve_mb
    if remaining_mb <= 0:
        raise InsufficientMemory(total_mb, remaining_mb)

    share = remaining_mb // 2
    return MemoryBudget(
        daemon_mb=profile.daemon_reserve_mb,
        executor_mb=share,
        driver_mb=share
    )


def compute_local_run_budget(
    total_mb: int,
    profile: Optional[LocalRunProfile] = None
) -> LocalRunBudget:
    """
    Size the driver heap and result-size ceiling for a local run.

    Args:
        total_mb: Total host memory in MB
        profile: Ratio settings (defaults: 0.7 of RAM, half of that for results)

    Returns:
        LocalRunBudget

    Raises:
        InsufficientMemory: If either limit rounds down to zero
    """
    profile = profile or LocalRunProfile()

    driver_mb = math.floor(total_mb * profile.driver_fraction)
    max_result_mb = math.floor(driver_mb * profile.result_fraction)
    if driver_mb <= 0 or max_result_mb <= 0:
        raise InsufficientMemory(total_mb, min(driver_mb, max_result_mb))

    return LocalRunBudget(driver_mb=driver_mb, max_result_size_mb=max_result_mb)


def write_spark_env(engine_dir: Path, budget: MemoryBudget) -> Path:
    """
    Write the budget into the engine's conf/spark-env.sh.

    The file is recreated from spark-env.sh.template on every call, so
    repeated calls never stack duplicate exports.

    Args:
        engine_dir: Spark installation directory
        budget: Budget to apply

    Returns:
        Path of the written spark-env.sh

    Raises:
        ValidationError: If engine_dir has no spark-env.sh.template
        StorageError: If spark-env.sh could not be written
    """
    engine_dir = Path(engine_dir)
    template = engine_dir / SPARK_ENV_TEMPLATE
    if not template.is_file():
        raise ValidationError(f"{engine_dir} does not seem to be a Spark installation")

    env_file = engine_dir / SPARK_ENV_FILE

    # SPARK_DAEMON_MEMORY covers both master and worker daemons.
    # SPARK_WORKER_MEMORY caps all executors; there is a single executor.
    exports = [
        f"export SPARK_DAEMON_MEMORY={budget.daemon_mb}M",
        f"export SPARK_WORKER_MEMORY={budget.executor_mb}M",
        f"export SPARK_EXECUTOR_MEMORY={budget.executor_mb}M",
        f"export SPARK_DRIVER_MEMORY={budget.driver_mb}M",
    ]
    try:
        shutil.copyfile(template, env_file)
        with open(env_file, "a") as f:
            f.write("\n" + "\n".join(exports) + "\n")
    except OSError as e:
        raise StorageError(env_file, str(e)) from e

    logger.info(
        f"Wrote memory settings to {env_file}: daemon={budget.daemon_mb}M "
        f"executor={budget.executor_mb}M driver={budget.driver_mb}M"
    )
    return env_file

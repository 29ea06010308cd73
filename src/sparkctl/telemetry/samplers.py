"""
Resource samplers run as background collector processes.

Each collector appends CSV rows to its own file until it is killed. A
header row is written only when the file is new, so rows from one run
are never preceded by a second header.
"""
import csv
import time
from pathlib import Path
from typing import Callable, List, Optional

import psutil

from ..utils.logging import get_logger

logger = get_logger(__name__)

CPU_FIELDS = ["usr", "sys", "idl", "wai", "hiq", "siq"]
MEMORY_FIELDS = ["used", "buff", "cach", "free"]
DISK_HEADER = ["timestamp", "used", "available", "percent_used"]


def cpu_memory_header(cpu_count: int) -> List[str]:
    header = ["epoch"]
    for cpu in range(cpu_count):
        header.extend(f"cpu{cpu}_{field}" for field in CPU_FIELDS)
    header.extend(MEMORY_FIELDS)
    return header


def sample_cpu_memory(interval: float = 1.0) -> List:
    """
    One row of per-core CPU percentages plus memory usage.

    Blocks for interval seconds while psutil measures CPU times. Fields a
    platform does not report (iowait, irq, buffers, ...) are 0.
    """
    per_cpu = psutil.cpu_times_percent(interval=interval, percpu=True)
    memory = psutil.virtual_memory()

    row = [round(time.time(), 3)]
    for times in per_cpu:
        row.extend([
            times.user,
            times.system,
            times.idle,
            getattr(times, "iowait", 0.0),
            getattr(times, "irq", 0.0),
            getattr(times, "softirq", 0.0),
        ])
    row.extend([
        memory.used,
        getattr(memory, "buffers", 0),
        getattr(memory, "cached", 0),
        memory.free,
    ])
    return row


def sample_disk(volume: Path = Path("/")) -> List:
    """timestamp, used bytes, available bytes, percent used for volume."""
    usage = psutil.disk_usage(str(volume))
    return [int(time.time()), usage.used, usage.free, usage.percent]


def _open_report(path: Path, header: List[str]):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not path.exists() or path.stat().st_size == 0
    f = open(path, "a", newline="")
    writer = csv.writer(f)
    if is_new:
        writer.writerow(header)
        f.flush()
    return f, writer


def collect_stats(
    report_file: Path,
    interval: float = 1.0,
    max_samples: Optional[int] = None
) -> int:
    """
    Append CPU/memory rows to report_file every interval seconds.

    Runs until killed, or until max_samples rows are written.

    Returns:
        Number of rows written
    """
    header = cpu_memory_header(psutil.cpu_count(logical=True) or 1)
    f, writer = _open_report(report_file, header)
    written = 0
    logger.info(f"Collecting CPU and memory usage to {report_file}")

    with f:
        while max_samples is None or written < max_samples:
            writer.writerow(sample_cpu_memory(interval))
            f.flush()
            written += 1

    return written


def collect_df(
    report_file: Path,
    interval: float = 5.0,
    volume: Path = Path("/"),
    max_samples: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep
) -> int:
    """
    Append disk usage rows for volume to report_file every interval seconds.

    Spark spills tens of GB of shuffle data to local disk, so free space is
    sampled alongside CPU and memory.

    Returns:
        Number of rows written
    """
    f, writer = _open_report(report_file, DISK_HEADER)
    written = 0
    logger.info(f"Collecting disk usage of {volume} to {report_file} every {interval}s")

    with f:
        while max_samples is None or written < max_samples:
            sleep(interval)
            writer.writerow(sample_disk(volume))
            f.flush()
            written += 1

    return written

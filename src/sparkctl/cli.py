#!/usr/bin/env python3
"""
sparkctl command line.

Usage:
    sparkctl start-cluster /root/spark/stockspark/spark-2.1.1-bin-hadoop2.7
    sparkctl add-slave 192.168.11.239
    sparkctl run-cluster <engineDir> <trainDir> <targetDir> <k> <iters> online|em
    sparkctl start-metrics /root/spark/data/manual-run
    sparkctl stop-metrics

Exit codes: 0 on success, 1 on any precondition or validation failure.
run-local and run-cluster exit with the job's own exit code.
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .app import SparkCtl, build_app
from .config.loader import load_config
from .core.memory import compute_cluster_budget, read_total_memory_mb, write_spark_env
from .core.orchestrator import JobSpec
from .telemetry.samplers import collect_df, collect_stats
from .utils.exceptions import SparkCtlError
from .utils.logging import logger, setup_logging

log = logger.getChild("cli")


def cmd_start_cluster(app: SparkCtl, args) -> int:
    asyncio.run(app.daemons.start_cluster(args.engine_dir))
    return 0


def cmd_stop_cluster(app: SparkCtl, args) -> int:
    asyncio.run(app.daemons.stop_cluster(args.engine_dir))
    return 0


def cmd_add_slave(app: SparkCtl, args) -> int:
    asyncio.run(app.registry.add(args.address))
    return 0


def cmd_remove_slave(app: SparkCtl, args) -> int:
    app.registry.remove(args.address)
    return 0


def cmd_list_slaves(app: SparkCtl, args) -> int:
    for address in app.registry.list():
        print(address)
    return 0


def _job_spec(args) -> JobSpec:
    return JobSpec(
        engine_dir=args.engine_dir,
        train_dir=args.train_dir,
        target_dir=args.target_dir,
        k=args.k,
        iterations=args.iterations,
        algorithm=args.algorithm
    )


def _run(app: SparkCtl, args, cluster_mode: bool) -> int:
    result = asyncio.run(app.orchestrator.run(_job_spec(args), cluster_mode=cluster_mode))

    failed_workers = sorted(set(result.start_failures) | set(result.stop_failures))
    if failed_workers:
        log.warning(f"Telemetry incomplete on: {', '.join(failed_workers)}")
    log.info(f"Run {result.run_id} finished with exit code {result.exit_status}; logs in {result.run_dir}")
    return result.exit_status


def cmd_run_local(app: SparkCtl, args) -> int:
    return _run(app, args, cluster_mode=False)


def cmd_run_cluster(app: SparkCtl, args) -> int:
    return _run(app, args, cluster_mode=True)


def cmd_start_metrics(app: SparkCtl, args) -> int:
    app.telemetry.start(args.report_dir)
    return 0


def cmd_stop_metrics(app: SparkCtl, args) -> int:
    report = app.telemetry.stop()
    return 0 if report.ok else 1


def cmd_config_memory(app: SparkCtl, args) -> int:
    budget = compute_cluster_budget(read_total_memory_mb(), app.config.memory.cluster)
    write_spark_env(args.engine_dir, budget)
    return 0


def cmd_init(app: SparkCtl, args) -> int:
    app.init_data_root()
    return 0


def cmd_enable_nfs(app: SparkCtl, args) -> int:
    app.access_list.enable_sharing()
    return 0


def cmd_disable_nfs(app: SparkCtl, args) -> int:
    app.access_list.disable_sharing()
    return 0


def cmd_collect_df(args) -> int:
    try:
        collect_df(args.report_file, args.interval, volume=args.volume)
    except KeyboardInterrupt:
        pass
    return 0


def cmd_collect_stats(args) -> int:
    try:
        collect_stats(args.report_file, args.interval)
    except KeyboardInterrupt:
        pass
    return 0


COMMANDS: Dict[str, Callable[[SparkCtl, argparse.Namespace], int]] = {
    "start-cluster": cmd_start_cluster,
    "stop-cluster": cmd_stop_cluster,
    "add-slave": cmd_add_slave,
    "remove-slave": cmd_remove_slave,
    "list-slaves": cmd_list_slaves,
    "run-local": cmd_run_local,
    "run-cluster": cmd_run_cluster,
    "start-metrics": cmd_start_metrics,
    "stop-metrics": cmd_stop_metrics,
    "config-memory": cmd_config_memory,
    "init": cmd_init,
    "enable-nfs": cmd_enable_nfs,
    "disable-nfs": cmd_disable_nfs,
}

# Collectors run detached and need neither config nor the component graph
COLLECTORS: Dict[str, Callable[[argparse.Namespace], int]] = {
    "collect-df": cmd_collect_df,
    "collect-stats": cmd_collect_stats,
}


def _add_job_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("engine_dir", type=Path, help="Spark installation directory")
    parser.add_argument("train_dir", help="Training data directory")
    parser.add_argument("target_dir", help="Target data directory")
    parser.add_argument("k", type=int, help="Number of topics")
    parser.add_argument("iterations", type=int, help="Number of iterations")
    parser.add_argument("algorithm", help="LDA optimizer: online or em")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sparkctl",
        description="Spark cluster membership and correlated metrics orchestrator"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to YAML config file (default: $SPARKCTL_CONFIG or ~/.sparkctl/config.yaml)"
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    sub = parser.add_subparsers(dest="command", metavar="command")

    p = sub.add_parser("start-cluster", help="Start master and worker daemons")
    p.add_argument("engine_dir", type=Path)
    p = sub.add_parser("stop-cluster", help="Stop worker and master daemons")
    p.add_argument("engine_dir", type=Path)

    p = sub.add_parser("add-slave", help="Join a worker to the cluster")
    p.add_argument("address")
    p = sub.add_parser("remove-slave", help="Remove a worker from the cluster")
    p.add_argument("address")
    sub.add_parser("list-slaves", help="List cluster workers")

    p = sub.add_parser("run-local", help="Run the LDA job on this node")
    _add_job_arguments(p)
    p = sub.add_parser("run-cluster", help="Run the LDA job across the cluster")
    _add_job_arguments(p)

    p = sub.add_parser("start-metrics", help="Start CPU, RAM and disk collection")
    p.add_argument("report_dir", type=Path)
    sub.add_parser("stop-metrics", help="Stop metrics collection")

    p = sub.add_parser("collect-df", help="Sample disk usage until killed")
    p.add_argument("report_file", type=Path)
    p.add_argument("interval", type=float)
    p.add_argument("--volume", type=Path, default=Path("/"))

    p = sub.add_parser("collect-stats", help="Sample CPU and memory usage until killed")
    p.add_argument("report_file", type=Path)
    p.add_argument("--interval", type=float, default=1.0)

    p = sub.add_parser("config-memory", help="Write memory settings to conf/spark-env.sh")
    p.add_argument("engine_dir", type=Path)

    sub.add_parser("init", help="Create the data directory layout")
    sub.add_parser("enable-nfs", help="Start the NFS server")
    sub.add_parser("disable-nfs", help="Stop the NFS server")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command in COLLECTORS:
        setup_logging(level="DEBUG" if args.verbose else "INFO", console=True)
        return COLLECTORS[args.command](args)

    try:
        config = load_config(args.config)
        setup_logging(
            level="DEBUG" if args.verbose else config.logging.level,
            log_file=config.logging.file,
            console=config.logging.console
        )
        app = build_app(config)
        return COMMANDS[args.command](app, args)

    except SparkCtlError as e:
        log.error(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

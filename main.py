"""Edge Connectivity Test - Main Entry Point"""

import argparse
import asyncio
import logging
import os
import signal
import socket
import sys
from typing import List, Optional

from edge_connectivity.config import ConnectivityTestConfig, load_config, parse_parameter_args
from edge_connectivity.deployment import (
    DeploymentManager,
    DeploymentTarget,
    QuickstartRuntime,
    resolve_artifacts
)
from edge_connectivity.error_handling import ConfigurationError, RetryConfig
from edge_connectivity.load import LoadGenClient
from edge_connectivity.models import RunOutcome, Verdict
from edge_connectivity.monitoring import LogAnalyticsClient
from edge_connectivity.network import TrafficControlActuator
from edge_connectivity.orchestration import ConnectivityTestOrchestrator, RunComponents, save_report
from edge_connectivity.storage import ResultStore
from edge_connectivity.verification import ReportReceiver

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_INCOMPLETE = 2

logger = logging.getLogger("edge_connectivity")


def setup_logging(config: ConnectivityTestConfig):
    """Setup logging based on configuration"""
    log_config = config.logging

    logging.basicConfig(
        level=getattr(logging, log_config.level.upper(), logging.INFO),
        format=log_config.format,
        force=True
    )

    if log_config.file_enabled:
        from logging.handlers import RotatingFileHandler

        log_dir = os.path.dirname(log_config.file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_config.file_path,
            maxBytes=log_config.max_file_size,
            backupCount=log_config.backup_count
        )
        file_handler.setFormatter(logging.Formatter(log_config.format))
        logging.getLogger().addHandler(file_handler)


def exit_code(outcome: RunOutcome) -> int:
    """Process exit code for a run outcome"""
    if outcome.aborted:
        return EXIT_FAIL
    if outcome.verdict == Verdict.PASS:
        return EXIT_PASS
    if outcome.verdict == Verdict.INCOMPLETE_EVIDENCE:
        return EXIT_INCOMPLETE
    return EXIT_FAIL


def build_orchestrator(
    config: ConnectivityTestConfig,
    architecture: str,
    artifacts_dir: Optional[str] = None
) -> ConnectivityTestOrchestrator:
    """Wire the production components for one architecture"""
    params = config.resolve(architecture)
    deployment = config.deployment
    network = config.network_controller

    artifacts = resolve_artifacts(
        artifacts_dir or deployment.artifacts_dir,
        deployment.images_artifact,
        params.profile,
        deployment.manifest_template
    )

    host = socket.gethostname()
    device_id = deployment.device_id or f"{config.release_label}-{host}-{params.architecture}"
    target = DeploymentTarget(
        host=host,
        architecture=params.architecture,
        image_tag=artifacts.image_tag,
        registry=config.registry.address
    )

    edgelet_dir = os.path.join(artifacts_dir or deployment.artifacts_dir, params.profile.edgelet_artifact)
    backend = QuickstartRuntime(
        bundle_path=artifacts.quickstart_bundle,
        work_dir=deployment.work_dir,
        registry=config.registry,
        iot_hub_connection_string=deployment.iot_hub_connection_string,
        event_hub_connection_string=deployment.event_hub_connection_string,
        device_id=device_id,
        image_tag=artifacts.image_tag,
        edgelet_dir=edgelet_dir if os.path.isdir(edgelet_dir) else None,
        runtime_log_level=deployment.runtime_log_level,
        timeout=deployment.timeout,
        command_prefix=network.command_prefix
    )

    log_client = None
    if config.log_analytics.workspace_id and config.log_analytics.shared_key:
        log_client = LogAnalyticsClient(
            config.log_analytics.workspace_id,
            config.log_analytics.shared_key,
            request_timeout=config.log_analytics.request_timeout
        )

    store = ResultStore(config.result_coordinator.storage_connection_string)
    components = RunComponents(
        store=store,
        deployment_manager=DeploymentManager(
            backend,
            work_dir=deployment.work_dir,
            retry_config=RetryConfig(
                max_attempts=deployment.max_attempts,
                base_delay=deployment.retry_base_delay
            )
        ),
        actuator=TrafficControlActuator(
            interface=network.interface,
            command_prefix=network.command_prefix,
            command_timeout=network.command_timeout
        ),
        load_client=LoadGenClient(config.load_gen.endpoint, request_timeout=config.load_gen.request_timeout),
        log_client=log_client,
        report_receiver=ReportReceiver(
            store,
            host=config.result_coordinator.report_host,
            port=config.result_coordinator.report_port
        )
    )

    return ConnectivityTestOrchestrator(
        config,
        components,
        target,
        artifacts.read_template()
    )


async def run_connectivity_test(args: argparse.Namespace) -> int:
    """Run one TestRun and return the process exit code"""
    parameters = parse_parameter_args(args.param or [])
    config = load_config(args.config, parameters)
    setup_logging(config)

    architecture = args.architecture or config.architecture
    orchestrator = build_orchestrator(config, architecture, args.artifacts)

    abort_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_abort(signum):
        logger.warning(f"Received signal {signum}, aborting TestRun")
        abort_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, request_abort, signum)

    components = orchestrator.components
    try:
        outcome = await orchestrator.run(abort_event)
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await components.load_client.close()
        if components.log_client is not None:
            await components.log_client.close()
        await components.store.disconnect()

    if args.report_dir:
        save_report(outcome, args.report_dir)

    for warning in outcome.warnings:
        logger.warning(f"Run warning: {warning}")

    return exit_code(outcome)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Edge runtime connectivity test")
    parser.add_argument("--config", help="Configuration file path")
    parser.add_argument("--architecture", help="Architecture tag (e.g. linux_amd64_moby)")
    parser.add_argument(
        "--param",
        action="append",
        metavar="NAME=VALUE",
        help="Pipeline parameter, repeatable (e.g. testDuration=01:00:00)"
    )
    parser.add_argument("--artifacts", help="Directory the build artifacts were staged into")
    parser.add_argument("--report-dir", help="Directory to save the run report in")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point"""
    args = parse_args(argv)
    try:
        return asyncio.run(run_connectivity_test(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAIL
    except KeyboardInterrupt:
        print("\nExiting...")
        return EXIT_FAIL


if __name__ == "__main__":
    sys.exit(main())

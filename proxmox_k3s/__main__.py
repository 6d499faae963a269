"""
k3s + MinIO on Proxmox

Usage:
    proxmox-k3s deploy [--config cluster.yaml] [--workers N]
    proxmox-k3s template
    proxmox-k3s manifest
    proxmox-k3s verify <control-address>
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import DeploymentConfig, load_config
from .errors import DeploymentError
from .health import verify_cluster
from .models import TemplateRef
from .orchestrator import ClusterOrchestrator, print_report
from .remote import RemoteExecutor
from .workload import build_manifest, render_manifest

logger = logging.getLogger("proxmox_k3s")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxmox-k3s",
        description="Provision a k3s cluster on Proxmox and deploy MinIO onto it",
    )
    parser.add_argument("action", choices=["deploy", "template", "manifest", "verify"],
                        help="Action to perform")
    parser.add_argument("control_address", nargs="?",
                        help="Control node address (verify only)")
    parser.add_argument("--config", help="Configuration file path")
    parser.add_argument("--workers", type=int, help="Number of worker nodes")
    parser.add_argument("--proxmox-host", help="Run qm on this host over ssh")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


async def deploy(config: DeploymentConfig) -> int:
    orchestrator = ClusterOrchestrator(config)
    orchestrator.check_prerequisites()
    try:
        report = await orchestrator.run()
    except DeploymentError:
        # show what was created before the abort
        if orchestrator.report is not None:
            print_report(orchestrator.report)
        raise
    print_report(report)
    if report.degraded:
        logger.warning(f"Cluster is degraded: {len(report.failed_workers)} worker(s) failed")
    return 0


async def ensure_template(config: DeploymentConfig) -> int:
    orchestrator = ClusterOrchestrator(config)
    template = await orchestrator.templates.ensure_template(
        TemplateRef(config.template_id), config.image_url)
    print(f"Template {template.identity} is present")
    return 0


async def verify(config: DeploymentConfig, control_address: str) -> int:
    remote = RemoteExecutor(
        user=config.ssh_user,
        private_key=config.private_key_path,
        known_hosts=Path(config.known_hosts_file).expanduser(),
        # the node was pinned (or accepted) during deploy
        host_key_policy="strict" if config.host_key_policy == "pinned" else config.host_key_policy,
        timeout=config.remote_timeout,
    )
    healthy = await verify_cluster(remote, control_address, config.workload.namespace,
                                   config.k3s_api_port)
    return 0 if healthy else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config, worker_count=args.workers,
                             proxmox_host=args.proxmox_host, log_file=args.log_file)
    except DeploymentError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(args.verbose, config.log_file)

    try:
        if args.action == "manifest":
            print(render_manifest(build_manifest(config.workload)), end="")
            return 0
        if args.action == "template":
            return asyncio.run(ensure_template(config))
        if args.action == "verify":
            if not args.control_address:
                logger.error("verify requires the control node address")
                return 1
            return asyncio.run(verify(config, args.control_address))
        return asyncio.run(deploy(config))
    except KeyboardInterrupt:
        logger.info("Deployment interrupted by user")
        return 1
    except DeploymentError as e:
        logger.error(f"💥 Aborted: {e}")
        logger.error("Resources created so far were left in place; inspect and remove them manually")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""
homelab-provision: render (and optionally apply) the homelab fleet.

Settings come from the environment / .env (see homelab.config).
"""

import asyncio
import logging
import sys
from typing import List, Optional

from .config import get_settings
from .services.provisioning import (
    CloudflareDnsClient,
    FleetApplier,
    FleetResult,
    ReadinessGate,
    discover_descriptors,
    run_fleet,
)

logger = logging.getLogger(__name__)


def print_summary(result: FleetResult, stream=None) -> None:
    """Print exported identifiers, failures and advisories."""
    stream = stream or sys.stderr
    for group, identifiers in result.exports().items():
        if identifiers:
            print(f"{group}:", file=stream)
            for identifier in identifiers:
                print(f"  - {identifier}", file=stream)

    for warning in result.warnings:
        print(f"WARNING {warning}", file=stream)

    for advisory in result.advisories:
        print(
            f"{advisory.kind} {advisory.namespace}/{advisory.secret_name} "
            f"({advisory.workload}): {advisory.message}",
            file=stream,
        )

    for failure in result.failures:
        print(f"FAILED {failure.workload}: {failure.kind}: {failure.message}", file=stream)


async def provision(fleet_path: Optional[str], output: Optional[str], apply: bool, offline: bool) -> int:
    settings = get_settings()

    gate = ReadinessGate.from_settings(settings)
    if offline:
        gate.assume_ready = True

    try:
        descriptors, discovery_failures = discover_descriptors(fleet_path or settings.fleet_path)
    except FileNotFoundError as e:
        logger.error(str(e))
        return 2

    result = await run_fleet(settings, descriptors=descriptors, gate=gate)
    result.failures = discovery_failures + result.failures

    rendered = result.render_yaml()
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(rendered)
        logger.info(f"Wrote {len(result.manifests())} manifest(s) to {output}")
    else:
        sys.stdout.write(rendered)

    if apply:
        dns_client = None
        if settings.cloudflare_api_token:
            dns_client = CloudflareDnsClient(settings.cloudflare_api_token, settings.cloudflare_api_base)
        result.failures.extend(await FleetApplier(dns_client=dns_client).apply(result))

    print_summary(result)
    return 0 if result.ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Provision homelab workloads")
    parser.add_argument(
        "--fleet",
        help="YAML file or directory of workload descriptors (default: FLEET_PATH)",
    )
    parser.add_argument(
        "--output",
        help="Write rendered manifests to this file instead of stdout",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Apply manifests to the cluster and DNS records to Cloudflare",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not probe the cluster; assume every subsystem is ready",
    )
    args = parser.parse_args(argv)

    if args.apply and args.offline:
        parser.error("--apply needs cluster access and cannot be combined with --offline")

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    return asyncio.run(provision(args.fleet, args.output, args.apply, args.offline))


if __name__ == "__main__":
    sys.exit(main())

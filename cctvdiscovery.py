#!/usr/bin/env python3
"""
CCTV Discovery — find cameras / NVRs, authenticate and audit their streams
===========================================================================

Usage:
    cctvdiscovery --cidr 192.168.1.0/24 -c admin:12345
    cctvdiscovery --range 192.168.1.10 192.168.1.50 -c admin:12345 -c admin:admin
    cctvdiscovery --target 10.0.0.5 -c admin:admin --json
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Add project root to path
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_DIR)

EXIT_INVALID_INPUT = 2

STATUS_STYLES = {
    "completed": "green",
    "auth_failed": "yellow",
    "error": "red",
}


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CCTV Discovery — camera / NVR discovery and stream compliance audit",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  cctvdiscovery --cidr 192.168.1.0/24 -c admin:12345
  cctvdiscovery --range 192.168.1.10 192.168.1.50 -c admin:12345
  cctvdiscovery --target 10.0.0.5 -c admin:admin --json
        """,
    )
    targets = parser.add_mutually_exclusive_group(required=True)
    targets.add_argument("--cidr", metavar="CIDR", help="Scan a CIDR block (a.b.c.d/n)")
    targets.add_argument("--range", nargs=2, metavar=("START", "END"),
                         help="Scan an inclusive address range")
    targets.add_argument("--target", metavar="IP", help="Scan a single address")

    parser.add_argument("-c", "--credential", action="append", default=[], metavar="USER:PASS",
                        help="Credential to try (repeatable, tried in order)")
    parser.add_argument("--concurrency", type=int, metavar="N",
                        help="Max devices processed concurrently")
    parser.add_argument("--timeout", type=int, metavar="MS", help="Port probe timeout in ms")
    parser.add_argument("--ws-discovery", action="store_true",
                        help="Run a WS-Discovery probe before scanning")
    parser.add_argument("--settings", metavar="PATH", help="Settings JSON file")
    parser.add_argument("--save-settings", metavar="PATH",
                        help="Write the effective settings to PATH and exit")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    return parser


def print_results(devices, console) -> None:
    from rich.markup import escape
    from rich.table import Table

    table = Table(title="CCTV Discovery Results")
    table.add_column("IP", style="cyan")
    table.add_column("MAC")
    table.add_column("Device")
    table.add_column("Status", style="bold")
    table.add_column("Auth")
    table.add_column("Streams", justify="right")
    table.add_column("Compliance")

    for dev in devices:
        style = STATUS_STYLES.get(dev.status.value, "")
        device_name = dev.device_name or dev.manufacturer or "-"
        if dev.is_nvr_dvr:
            device_name += " [NVR/DVR]"
        if dev.status.value == "completed":
            issues = [s for s in dev.rtsp_streams if not s.compliant]
            compliance = f"{dev.compliant_streams}/{len(dev.rtsp_streams)} OK"
            if issues:
                compliance += f": {issues[0].compliance_issues}"
        else:
            compliance = dev.error_message or "-"
        table.add_row(
            dev.ip,
            dev.mac or "-",
            escape(device_name),
            f"[{style}]{dev.status.value}[/{style}]" if style else dev.status.value,
            dev.auth_method.value if dev.auth_method else "-",
            str(len(dev.rtsp_streams)),
            escape(compliance),
        )
    console.print(table)

    for dev in devices:
        for stream in dev.rtsp_streams:
            mark = "[green]✓[/green]" if stream.compliant else "[red]✗[/red]"
            details = ", ".join(filter(None, (
                stream.codec, stream.resolution, stream.profile,
                f"{stream.bitrate_kbps}kbps" if stream.bitrate_kbps is not None else None,
            )))
            console.print(f"  {mark} {dev.ip} {escape(stream.stream_name)}: {escape(stream.rtsp_url)} ({details})")


async def run_scan(pipeline, target: str, total: int, console, show_progress: bool):
    from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn

    from cctvcore.net_utils import iter_target

    if not show_progress:
        return await pipeline.run(iter_target(target), total=total)

    with Progress(
        TextColumn("[bold cyan]Scanning"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("scan", total=total)
        return await pipeline.run(
            iter_target(target), total=total,
            progress_callback=lambda done, _: progress.update(task, completed=done),
        )


def main(argv=None) -> int:
    from rich.console import Console

    from cctvcore.config import load_config, save_config
    from cctvcore.device import Credential
    from cctvcore.net_utils import InvalidTargetError, count_target
    from cctvcore.pipeline import DiscoveryPipeline

    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    console = Console(stderr=args.json)
    err_console = Console(stderr=True)

    config = load_config(args.settings)
    if args.concurrency is not None:
        config.max_concurrency = max(1, args.concurrency)
    if args.timeout is not None:
        config.port_timeout_ms = args.timeout
    if args.ws_discovery:
        config.ws_discovery_enabled = True

    if args.save_settings:
        path = save_config(config, args.save_settings)
        console.print(f"[green][+][/green] Settings written to {path}")
        return 0

    try:
        credentials = [Credential.parse(c) for c in args.credential]
    except ValueError as e:
        err_console.print(f"[red][!] {e}[/red]")
        return EXIT_INVALID_INPUT

    if args.cidr:
        target = args.cidr
    elif args.range:
        target = f"{args.range[0]}-{args.range[1]}"
    else:
        target = args.target

    try:
        total = count_target(target)
    except InvalidTargetError as e:
        err_console.print(f"[red][!] {e}[/red]")
        return EXIT_INVALID_INPUT

    if not total:
        err_console.print(f"[yellow][!] {target} contains no host addresses, use --target for one host[/yellow]")
        return EXIT_INVALID_INPUT

    if not credentials:
        err_console.print("[yellow][*] No credentials given, only unauthenticated access will be tried[/yellow]")

    pipeline = DiscoveryPipeline(config, credentials)
    try:
        devices = asyncio.run(run_scan(pipeline, target, total, console, show_progress=not args.json))
    except KeyboardInterrupt:
        err_console.print("[yellow][!] Scan interrupted[/yellow]")
        return 130

    if args.json:
        print(json.dumps([d.to_dict() for d in devices], indent=2))
    else:
        print_results(devices, console)
        completed = sum(1 for d in devices if d.status.value == "completed")
        streams = sum(len(d.rtsp_streams) for d in devices)
        console.print(f"\n[green]Total: {len(devices)}[/green] | "
                      f"[cyan]Completed: {completed}[/cyan] | "
                      f"[yellow]Streams: {streams}[/yellow]")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""
Command-line entry point for provisioning VMs and running scripts on them.

Examples:
    # Provision a VM and clone a repository onto it
    devbox provision --project my-proj --zone us-central1-a --name box1 \\
        --repo octo/hello --boot-script ./setup.sh

    # Run a script on an existing VM
    devbox run --project my-proj --zone us-central1-a --name box1 ./task.sh
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path

import dotenv

from ._types import Console, OutputStream
from .config import Settings
from .errors import DevboxError
from .orchestrator import ProvisioningRequest, RepositoryRequest
from .progress import EventKind, ProgressEvent
from .providers import DEFAULT_SOURCE_IMAGE, InstanceRef
from .service import DevboxService, ScriptOwner


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="devbox",
        description="Provision development VMs and run scripts on them",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable info logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print results")
    parser.add_argument(
        "--user",
        default=os.environ.get("USER", "local"),
        help="Console user id the work is performed for (default: $USER)",
    )
    parser.add_argument("--organization", default="local", help="Organization id (default: local)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser("provision", help="Create a VM and set it up")
    _add_instance_args(provision)
    provision.add_argument("--machine-type", default="e2-medium", help="Machine type (default: e2-medium)")
    provision.add_argument("--image", default=DEFAULT_SOURCE_IMAGE, help="Source image")
    provision.add_argument("--disk-size", type=int, default=10, help="Boot disk size in GB (default: 10)")
    provision.add_argument("--startup-script", type=Path, help="Metadata startup script file")
    provision.add_argument("--boot-script", type=Path, help="Script run over SSH once the VM is up")
    provision.add_argument("--repo", help="GitHub repository to clone (owner/name or URL)")
    provision.add_argument("--branch", help="Branch to clone")
    provision.add_argument("--clone-dir", help="Clone directory on the VM (default: ~/<name>)")
    provision.add_argument("--record-id", help="Instance record id (default: generated)")

    run = subparsers.add_parser("run", help="Run a script on an existing VM")
    _add_instance_args(run)
    run.add_argument("script", help="Script file to run, or - for stdin")
    run.add_argument("--host", help="SSH host (default: the VM's external IP)")
    run.add_argument("--timeout", type=float, help="Seconds before the script is aborted")

    return parser.parse_args(argv)


def _add_instance_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--project", required=True, help="GCP project id")
    parser.add_argument("--zone", required=True, help="Compute Engine zone")
    parser.add_argument("--name", required=True, help="Instance name")


def _read_script(path: Path | str | None) -> str | None:
    if path is None:
        return None
    return _read_script_text(path)


def _read_script_text(path: Path | str) -> str:
    if str(path) == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def format_event(event: ProgressEvent) -> str | None:
    match event.kind:
        case EventKind.STAGE:
            return f"[{event.percent:3d}%] {event.message}"
        case EventKind.WARNING:
            return f"  ! {event.message}"
        case EventKind.ERROR:
            return f"  ✗ {event.message}"
        case EventKind.OUTPUT:
            return None
    return f"  {event.message}"


async def provision(args: argparse.Namespace, service: DevboxService, console: Console) -> int:
    repository = None
    if args.repo:
        repository = RepositoryRequest.parse(args.repo, branch=args.branch, directory=args.clone_dir)
    request = ProvisioningRequest(
        record_id=args.record_id or uuid.uuid4().hex,
        organization_id=args.organization,
        user_id=args.user,
        name=args.name,
        project_id=args.project,
        zone=args.zone,
        machine_type=args.machine_type,
        source_image=args.image,
        disk_size_gb=args.disk_size,
        startup_script=_read_script(args.startup_script),
        boot_script=_read_script(args.boot_script),
        repository=repository,
    )
    tracking_id = service.start_provisioning(request)
    console.info(f"Tracking id: {tracking_id}")

    last: ProgressEvent | None = None
    async for event in service.subscribe(tracking_id):
        last = event
        if event.kind is EventKind.OUTPUT and event.output is not None:
            if not console.quiet:
                stream = sys.stdout if event.output.stream == "stdout" else sys.stderr
                stream.write(event.output.text)
                stream.flush()
            continue
        line = format_event(event)
        if line is not None:
            console.info(line)

    await service.wait_for_provisioning(tracking_id)
    if last is not None and last.kind is not EventKind.ERROR:
        console.always(f"VM {request.name} ready (instance {last.instance_id})")
        return 0
    console.always(f"Provisioning failed: {last.message if last else 'no progress recorded'}")
    return 1


async def run_script(args: argparse.Namespace, service: DevboxService, console: Console) -> int:
    script = _read_script_text(args.script)
    ref = InstanceRef(args.project, args.zone, args.name)

    def show(stream: OutputStream, text: str) -> None:
        target = sys.stdout if stream == "stdout" else sys.stderr
        target.write(text)
        target.flush()

    owner = ScriptOwner(user_id=args.user, organization_id=args.organization)
    handle = service.start_script(ref, script, owner, args.timeout, on_output=show, host=args.host)
    console.info(f"Session id: {handle.session_id}")
    try:
        result = await handle.task
    except asyncio.CancelledError:
        service.abort_session(handle.session_id, owner)
        raise
    console.always(f"Script {result.describe()} after {result.duration_ms / 1000:.1f}s")
    if result.succeeded:
        return 0
    return result.exit_code or 1


async def main_async(args: argparse.Namespace, console: Console) -> int:
    service = DevboxService.from_settings(Settings.from_env())
    try:
        match args.command:
            case "provision":
                return await provision(args, service, console)
            case "run":
                return await run_script(args, service, console)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> None:
    dotenv.load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(message)s",
    )
    console = Console(quiet=args.quiet)
    try:
        code = asyncio.run(main_async(args, console))
    except DevboxError as exc:
        console.always(f"Error: {exc}")
        sys.exit(2)
    except KeyboardInterrupt:
        console.always("Interrupted")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()

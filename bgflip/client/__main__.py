"""
Command-line client.

    python -m bgflip.client upload cat.jpg --session s1 --wait
    python -m bgflip.client status <id>
    python -m bgflip.client delete <id>
    python -m bgflip.client list s1
"""

import argparse
import asyncio
import json
import sys

import httpx

from bgflip.client.api import ApiClientError, ImagesApiClient
from bgflip.client.poller import DEFAULT_INTERVAL_SECONDS, PollingError, StatusPoller


def _print(payload):
    print(json.dumps(payload, indent=2))


async def _upload(client: ImagesApiClient, args) -> int:
    created = await client.upload_file(args.file, session_id=args.session)
    _print(created)
    if not args.wait:
        return 0

    def report(status):
        print(f"{status['id']}: {status['status']}")

    poller = StatusPoller(client.get_status, created["id"], interval=args.interval, on_update=report)
    final = await poller.wait()
    _print(final)
    return 0 if final and final.get("status") == "completed" else 1


async def _run(args, transport=None) -> int:
    async with ImagesApiClient(args.base_url, transport=transport) as client:
        if args.command == "upload":
            return await _upload(client, args)
        if args.command == "status":
            _print(await client.get_status(args.id))
        elif args.command == "delete":
            _print(await client.delete(args.id))
        elif args.command == "list":
            _print(await client.list_by_session(args.session))
    return 0


def main(argv=None, transport=None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m bgflip.client",
        description="Upload images for background removal and follow their processing"
    )
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Service base URL"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    upload = commands.add_parser("upload", help="Upload an image")
    upload.add_argument("file", help="Path to a JPEG, PNG, WebP or GIF file")
    upload.add_argument("--session", default=None, help="Session id to group uploads")
    upload.add_argument("--wait", action="store_true", help="Poll until the job completes or fails")
    upload.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_INTERVAL_SECONDS,
        help="Polling interval in seconds"
    )

    status = commands.add_parser("status", help="Show a job's status")
    status.add_argument("id")

    delete = commands.add_parser("delete", help="Delete a job and its images")
    delete.add_argument("id")

    listing = commands.add_parser("list", help="List the jobs of a session")
    listing.add_argument("session")

    args = parser.parse_args(argv)

    try:
        return asyncio.run(_run(args, transport))
    except (ApiClientError, PollingError, httpx.HTTPError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Command line entry point (``ocpi-bridge`` / ``python -m ocpi_bridge``).

Every subcommand runs one client operation against the configured peer and
prints the structured result as JSON.  Options default to the ``OCPI_*``
environment variables read by :meth:`ClientConfig.from_env`.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .client import CommonClient
from .config import ClientConfig
from .models import PartyRole
from .responses import OCPIResponse


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ocpi-bridge",
        description="Discover an OCPI peer and negotiate credentials with it.",
    )
    parser.add_argument("--versions-url", help="the peer's versions endpoint")
    parser.add_argument("--token", help="token used towards the peer (Token A before registering)")
    parser.add_argument(
        "--plain-token",
        action="store_true",
        help="send the token without base64 encoding (OCPI 2.1.1 peers)",
    )
    parser.add_argument("--timeout", type=float, help="per request timeout in seconds")
    parser.add_argument("--retries", type=int, help="retries for transient failures")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument(
        "--describe",
        action="store_true",
        help="also print the client state and counters",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("versions", help="list the versions of the peer")
    detail = commands.add_parser("version-detail", help="show the endpoints of a version")
    detail.add_argument("version", nargs="?")
    credentials = commands.add_parser("credentials", help="show the credentials the peer holds for us")
    credentials.add_argument("--version")
    register = commands.add_parser("register", help="run the credentials handshake")
    register.add_argument("--version")
    register.add_argument("--remote-role", choices=[role.value for role in PartyRole])
    return parser


async def run(args: argparse.Namespace, config: ClientConfig) -> dict:
    async with CommonClient(config) as client:
        response: OCPIResponse
        if args.command == "versions":
            response = await client.list_versions()
        elif args.command == "version-detail":
            response = await client.get_version_detail(args.version)
        elif args.command == "credentials":
            response = await client.fetch_credentials(args.version)
        else:
            remote_role = PartyRole(args.remote_role) if args.remote_role else None
            response = await client.register(args.version, remote_role=remote_role)

        result = response.to_dict()
        if args.describe:
            result = {
                "response": result,
                "client": client.describe(),
                "counters": client.counters.to_dict(),
            }
        return result


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = ClientConfig.from_env(
            versions_url=args.versions_url,
            access_token=args.token,
            access_token_base64=False if args.plain_token else None,
            request_timeout=args.timeout,
            max_number_of_retries=args.retries,
        )
    except ValueError as exc:
        parser.error(str(exc))

    result = asyncio.run(run(args, config))
    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    response = result.get("response", result)
    return 1 if "error" in response else 0

"""Command line interface for the Chaum-Pedersen authentication service."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import httpx
import uvicorn

from cpauth.crypto import ChaumPedersenProver, derive_public_key, generate_secret
from cpauth.logging import setup_logging
from cpauth.settings import AuthSettings, DatabaseSettings
from cpauth.store import SessionStore
from cpauth.sweeper import ExpirySweeper

DEFAULT_URL = "http://127.0.0.1:8000"


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service")
    serve_parser.add_argument("--host", help="Bind address (default: CPAUTH_HOST)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: CPAUTH_PORT)")

    subparsers.add_parser("init-db", help="Create the database schema")
    subparsers.add_parser("sweep", help="Delete expired challenges and sessions once")

    subparsers.add_parser("keygen", help="Generate a secret and its (y1, y2) public key")

    for name, help_text in (
        ("register", "Register a username with the key derived from a secret"),
        ("login", "Prove knowledge of the secret and obtain a session"),
    ):
        client_parser = subparsers.add_parser(name, help=help_text)
        client_parser.add_argument("username", help="Account name")
        client_parser.add_argument("secret", help="Decimal secret exponent")
        client_parser.add_argument(
            "--url",
            default=DEFAULT_URL,
            help=f"Base URL of the service (default: {DEFAULT_URL})",
        )

    return parser.parse_args(argv)


async def _init_db() -> None:
    store = SessionStore.from_settings(DatabaseSettings())
    try:
        await store.create_schema()
    finally:
        await store.close()


async def _sweep_once() -> dict[str, int] | None:
    store = SessionStore.from_settings(DatabaseSettings())
    try:
        result = await ExpirySweeper(store).run_once()
    finally:
        await store.close()
    if result is None:
        return None
    return {"auth_challenges": result.auth_challenges, "active_sessions": result.active_sessions}


def register(client: httpx.Client, username: str, secret: int) -> dict[str, object]:
    y1, y2 = derive_public_key(secret)
    reply = client.post("/register", json={"username": username, "y1": str(y1), "y2": str(y2)})
    reply.raise_for_status()
    return reply.json()


def login(client: httpx.Client, username: str, secret: int) -> dict[str, object]:
    prover = ChaumPedersenProver(secret)
    commitment = prover.commit()
    start = client.post(
        "/login/start",
        json={"username": username, "r1": str(commitment.r1), "r2": str(commitment.r2)},
    )
    start.raise_for_status()
    challenge = start.json()

    response = prover.respond(int(challenge["c"]), commitment)
    finish = client.post("/login/finish", json={"auth_id": challenge["auth_id"], "response": str(response)})
    finish.raise_for_status()
    return finish.json()


def main(argv: list[str] | None = None) -> int:
    namespace = parse_args(argv if argv is not None else sys.argv[1:])

    if namespace.command == "serve":
        settings = AuthSettings()
        uvicorn.run(
            "cpauth.server:get_app",
            factory=True,
            host=namespace.host or settings.host,
            port=namespace.port or settings.port,
        )
        return 0

    setup_logging()

    if namespace.command == "init-db":
        asyncio.run(_init_db())
        return 0

    if namespace.command == "sweep":
        payload = asyncio.run(_sweep_once())
        if payload is None:
            print("Sweep failed; see log output", file=sys.stderr)
            return 1
        print(json.dumps(payload, indent=2))
        return 0

    if namespace.command == "keygen":
        secret = generate_secret()
        y1, y2 = derive_public_key(secret)
        print(json.dumps({"secret": str(secret), "y1": str(y1), "y2": str(y2)}, indent=2))
        return 0

    if namespace.command in ("register", "login"):
        try:
            secret = int(namespace.secret)
        except ValueError:
            print("Secret must be a decimal integer", file=sys.stderr)
            return 1
        action = register if namespace.command == "register" else login
        with httpx.Client(base_url=namespace.url) as client:
            try:
                payload = action(client, namespace.username, secret)
            except httpx.HTTPStatusError as exc:
                print(f"{namespace.command} failed: {exc.response.status_code} {exc.response.text}", file=sys.stderr)
                return 1
            except ValueError as exc:
                print(f"Invalid secret: {exc}", file=sys.stderr)
                return 1
        print(json.dumps(payload, indent=2))
        return 0

    raise RuntimeError("Unreachable")


if __name__ == "__main__":
    raise SystemExit(main())

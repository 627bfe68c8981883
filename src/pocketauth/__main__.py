"""PocketAuth entry point.

Changes:
  - 2026-10-18: Added add-user for seeding resource owners into the SQL store.
  - 2026-10-18: Added list-clients and cleanup subcommands.
  - 2026-10-18: Initial CLI: serve, register-client, deactivate-client.
"""

import argparse
import json
import logging
import sys

from pocketauth import __version__
from pocketauth.config import Settings, get_settings
from pocketauth.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def _open_store(settings: Settings):
    from pocketauth.oauth2.sql_store import SqlStore

    store = SqlStore.from_url(settings.resolved_database_url())
    store.create_all()
    return store


def _engine(settings: Settings):
    from pocketauth.oauth2.server import AuthorizationServer
    from pocketauth.security.audit import AuditLogger

    store = _open_store(settings)
    return store, AuthorizationServer.from_repositories(store.repositories(), audit=AuditLogger())


def run_server(settings: Settings, host: str, port: int, dev: bool = False) -> None:
    """Start the authorization server with uvicorn."""
    import uvicorn

    from pocketauth.api.app import create_app

    logger.info("PocketAuth listening on http://%s:%s/api", host, port)
    uvicorn.run(
        create_app(settings=settings),
        host=host,
        port=port,
        reload=False,
        log_level="debug" if dev else settings.log_level.lower(),
        log_config=None,
    )


def cmd_register_client(settings: Settings, args: argparse.Namespace) -> int:
    store, server = _engine(settings)
    try:
        client_id, client_secret = server.register_client(
            name=args.name,
            redirect_uris=args.redirect_uri,
            scopes=args.scope or None,
            allowed_origin=args.allowed_origin or "",
        )
    finally:
        store.dispose()
    # Printed once; the secret is not recoverable afterwards.
    print(json.dumps({"client_id": client_id, "client_secret": client_secret}, indent=2))
    return 0


def cmd_deactivate_client(settings: Settings, args: argparse.Namespace) -> int:
    store, server = _engine(settings)
    try:
        ok = server.deactivate_client(args.client_id, revoke_grants=not args.keep_grants)
    finally:
        store.dispose()
    if not ok:
        logger.error("No active client %s", args.client_id)
        return 1
    print(f"Deactivated {args.client_id}")
    return 0


def cmd_list_clients(settings: Settings, args: argparse.Namespace) -> int:
    store = _open_store(settings)
    try:
        clients = store.repositories().clients.list_clients(active_only=args.active)
    finally:
        store.dispose()
    for c in clients:
        status = "active" if c.is_active else "inactive"
        print(f"{c.client_id}  {status:8}  {c.client_name}  {' '.join(c.redirect_uris)}")
    return 0


def cmd_add_user(settings: Settings, args: argparse.Namespace) -> int:
    from pocketauth.oauth2.models import User

    store = _open_store(settings)
    try:
        store.repositories().users.add(
            User(
                id=args.user_id,
                display_name=args.name,
                avatar_url=args.avatar_url,
                email=args.email,
                email_verified=args.email_verified,
            )
        )
    finally:
        store.dispose()
    print(f"Saved user {args.user_id}")
    return 0


def cmd_cleanup(settings: Settings, args: argparse.Namespace) -> int:
    store, server = _engine(settings)
    try:
        counts = server.cleanup_expired()
    finally:
        store.dispose()
    print(", ".join(f"{name}={n}" for name, n in counts.items()))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pocketauth",
        description="PocketAuth - OAuth 2.0 authorization server (code flow + PKCE)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pocketauth serve                                   Start the server
  pocketauth register-client "My App" --redirect-uri https://app.example/cb
  pocketauth list-clients --active
  pocketauth deactivate-client <client_id>
  pocketauth cleanup                                 Delete expired codes and tokens
""",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default=None, help="Bind address (default: settings.host)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: settings.port)")
    serve.add_argument("--dev", action="store_true", help="Verbose server logging")

    reg = sub.add_parser("register-client", help="Register an OAuth client")
    reg.add_argument("name")
    reg.add_argument(
        "--redirect-uri", action="append", required=True, help="Allowed redirect URI (repeatable)"
    )
    reg.add_argument("--scope", action="append", help="Allowed scope (repeatable)")
    reg.add_argument("--allowed-origin", help="Browser origin allowed to call the token endpoint")

    deact = sub.add_parser("deactivate-client", help="Deactivate a client")
    deact.add_argument("client_id")
    deact.add_argument(
        "--keep-grants", action="store_true", help="Leave outstanding codes and tokens in place"
    )

    lst = sub.add_parser("list-clients", help="List registered clients")
    lst.add_argument("--active", action="store_true", help="Only active clients")

    user = sub.add_parser("add-user", help="Create or update a resource owner")
    user.add_argument("user_id", type=int)
    user.add_argument("--name")
    user.add_argument("--email")
    user.add_argument("--avatar-url")
    user.add_argument("--email-verified", action="store_true")

    sub.add_parser("cleanup", help="Delete expired codes and tokens")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(level=settings.log_level)

    commands = {
        "register-client": cmd_register_client,
        "deactivate-client": cmd_deactivate_client,
        "list-clients": cmd_list_clients,
        "add-user": cmd_add_user,
        "cleanup": cmd_cleanup,
    }

    try:
        if args.command == "serve":
            run_server(
                settings,
                host=args.host or settings.host,
                port=args.port or settings.port,
                dev=args.dev,
            )
        else:
            sys.exit(commands[args.command](settings, args))
    except KeyboardInterrupt:
        logger.info("PocketAuth stopped.")


if __name__ == "__main__":
    main()

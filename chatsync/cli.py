import argparse
import asyncio
import logging
import re
import sys

from .config import config_path, load_config, validate_config
from .logging import setup_logging


logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="chatsync command line interface")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the reference chat backend")
    serve.add_argument("--host", help="Override server.host")
    serve.add_argument("--port", type=int, help="Override server.port")
    serve.add_argument("--database-url", help="Override server.database_url")

    watch = subparsers.add_parser("watch", help="Follow channels and messages from a backend")
    watch.add_argument("--user", help="Override user_id")
    watch.add_argument("--channel", help="Channel to follow")
    watch.add_argument("--send", metavar="TEXT", help="Send TEXT to --channel once started")
    watch.add_argument("--duration", type=float, help="Stop after this many seconds")

    add_user = subparsers.add_parser("add-user", help="Create or update a backend user")
    add_user.add_argument("user_id")
    add_user.add_argument("--name")
    add_user.add_argument("--email")
    add_user.add_argument("--role")
    add_user.add_argument("--database-url", help="Override server.database_url")

    subparsers.add_parser("check-config", help="Validate configuration file")

    args = parser.parse_args(argv)

    setup_logging(debug=args.debug)

    if args.command == "serve":
        asyncio.run(_serve(args))
    elif args.command == "watch":
        try:
            asyncio.run(_watch(args))
        except KeyboardInterrupt:
            logger.info("Interrupted")
    elif args.command == "add-user":
        asyncio.run(_add_user(args))
    elif args.command == "check-config":
        sys.exit(_check_config())


async def _serve(args) -> None:
    """Start the reference backend on the configured address."""
    import uvicorn

    from .server.api import create_app
    from .server.db.session import init_db

    cfg = load_config()
    host = args.host or cfg.server.host
    port = args.port or cfg.server.port
    db_url = args.database_url or cfg.server.database_url

    masked_url = re.sub(r":[^:@/]+@", ":***@", db_url)
    logger.info("Initialising database at %s", masked_url)
    await init_db(db_url)

    logger.info("Starting chat backend on %s:%s", host, port)
    server = uvicorn.Server(uvicorn.Config(create_app(), host=host, port=port, log_level="info"))
    await server.serve()


async def _watch(args) -> None:
    """Run the sync core against a backend and log what it sees."""
    from .client import ChatSync, LocalSession
    from .errors import ChatSyncError
    from .transport import HttpTransport

    cfg = load_config()
    user_id = args.user or cfg.user_id
    if not user_id:
        logger.error("No user id configured; set user_id in %s or pass --user", config_path())
        return

    transport = HttpTransport(cfg.api_base_url, user_id=user_id, timeout_s=cfg.request_timeout_s)
    chat = ChatSync(transport, config=cfg.poll)
    chat.start(LocalSession(user_id=user_id))
    try:
        if args.channel:
            chat.select_channel(args.channel)
            if args.send:
                try:
                    message = await chat.send_message(args.channel, args.send)
                    logger.info("Sent message %s", message.id)
                except ChatSyncError as exc:
                    logger.error("Send failed: %s", exc)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + args.duration if args.duration else None
        while deadline is None or loop.time() < deadline:
            await asyncio.sleep(cfg.poll.message_interval_s)
            channels = chat.get_channel_list()
            logger.info(
                "Channels: %s",
                ", ".join(f"{ch.label}{'*' if ch.unread else ''}" for ch in channels) or "-",
            )
            if args.channel:
                for message in chat.get_ordered_messages(args.channel)[-10:]:
                    logger.info(
                        "[%s] %s: %s",
                        message.created_at.isoformat(timespec="seconds"),
                        message.sender.name if message.sender and message.sender.name else message.sender_id,
                        message.content,
                    )
    finally:
        await chat.close()
        await transport.close()


async def _add_user(args) -> None:
    """Insert a user into the backend database, or update its profile."""
    from .server.db.models import User
    from .server.db.session import close_db, get_session, init_db

    cfg = load_config()
    await init_db(args.database_url or cfg.server.database_url)
    try:
        async with get_session() as db:
            user = await db.get(User, args.user_id)
            if user is None:
                user = User(id=args.user_id)
                db.add(user)
            for field in ("name", "email", "role"):
                value = getattr(args, field)
                if value is not None:
                    setattr(user, field, value)
            await db.commit()
        logger.info("User %s saved", args.user_id)
    finally:
        await close_db()


def _check_config() -> int:
    """Validate the configuration file; returns the process exit code."""
    path = config_path()
    logger.info("Checking configuration at %s…", path)
    if not path.exists():
        logger.warning("Configuration file not found at %s, defaults apply", path)

    problems = validate_config(load_config(path))
    if problems:
        for problem in problems:
            logger.warning("Config problem: %s", problem)
        return 1
    logger.info("Configuration looks good.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    main()

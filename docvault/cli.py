"""
DocVault CLI — Bootstrap and maintenance commands.

Commands:
- docvault init         — Create DB tables, ensure the object storage bucket
- docvault check        — Validate config, database and Redis connectivity
- docvault create-user  — Register a user (admin token from config)
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from docvault.engine.errors import DocVaultError

logger = logging.getLogger("docvault.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="docvault",
        description="DocVault — document storage service",
    )
    parser.add_argument(
        "--config", default=None, help="Path to docvault.yaml (default: discovered from CWD)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # docvault init
    init_parser = subparsers.add_parser("init", help="Create tables and the storage bucket")
    init_parser.add_argument(
        "--skip-bucket", action="store_true", help="Do not touch object storage"
    )

    # docvault check
    subparsers.add_parser("check", help="Validate config, database and Redis")

    # docvault create-user
    user_parser = subparsers.add_parser("create-user", help="Register a user")
    user_parser.add_argument("login", help="Alphanumeric login")
    user_parser.add_argument("--password", help="Password (prompted if not provided)")

    args = parser.parse_args(argv)

    if args.command == "init":
        return cmd_init(args)
    elif args.command == "check":
        return cmd_check(args)
    elif args.command == "create-user":
        return cmd_create_user(args)
    else:
        parser.print_help()
        return 0


def _load(args: argparse.Namespace):
    from docvault.engine.config import load_config

    config = load_config(args.config)
    print(f"[OK] Configuration loaded ({config.environment})")
    return config


def cmd_init(args: argparse.Namespace) -> int:
    """
    Bootstrap:
    1. Load docvault.yaml
    2. Create all tables
    3. Create the bucket (local object storage only)
    """
    from docvault.db.session import close_db, init_db
    from docvault.documents.storage import S3ObjectStorage

    try:
        config = _load(args)
    except DocVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1

    try:
        init_db(config.database.url, create_tables=True)
        print("[OK] Database tables created")
    except SQLAlchemyError as e:
        print(f"[ERROR] Failed to create tables: {e}")
        return 1
    finally:
        close_db()

    if args.skip_bucket:
        print("[SKIP] Object storage")
        return 0

    try:
        created = S3ObjectStorage.from_config(config).ensure_bucket()
    except DocVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1
    if created:
        print(f"[OK] Bucket '{config.storage.bucket}' created")
    else:
        print(f"[OK] Bucket '{config.storage.bucket}' ready")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    """Validate config, then probe the database and Redis."""
    from docvault.db.session import close_db, get_session_factory, init_db
    from docvault.engine.cache import RedisCache

    errors = 0
    try:
        config = _load(args)
    except DocVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1

    if config.jwt.secret_key == "change-me":
        print("[WARN] jwt.secret_key is the default value")
    if not config.security.admin_token:
        print("[WARN] security.admin_token is empty; registration is disabled")

    try:
        init_db(config.database.url)
        session = get_session_factory()()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
        print("[OK] Database reachable")
    except SQLAlchemyError as e:
        print(f"[ERROR] Database: {e}")
        errors += 1
    finally:
        close_db()

    if not config.cache.enabled or config.cache.ttl <= 0:
        print("[SKIP] Cache disabled")
    else:
        cache = RedisCache(redis_url=config.redis.url, db=config.redis.db, prefix=config.cache.prefix)
        if cache.connect():
            print("[OK] Redis reachable")
        else:
            print("[WARN] Redis unreachable; documents will be served uncached")
        cache.close()

    print(f"\nTotal: {errors} error(s)")
    return 1 if errors else 0


def cmd_create_user(args: argparse.Namespace) -> int:
    from docvault.engine.runtime import init_runtime

    try:
        config = _load(args)
    except DocVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1

    password = args.password
    if not password:
        while True:
            password = getpass.getpass("  Password: ")
            confirm = getpass.getpass("  Confirm password: ")
            if password == confirm:
                break
            print("  Passwords do not match. Try again.")

    runtime = init_runtime(config)
    runtime.startup()
    try:
        runtime.users.register(config.security.admin_token, args.login, password, user_agent="docvault-cli")
    except DocVaultError as e:
        print(f"[ERROR] {e.message}")
        return 1
    finally:
        runtime.shutdown()

    print(f"[OK] User '{args.login}' created")
    return 0


if __name__ == "__main__":
    sys.exit(main())

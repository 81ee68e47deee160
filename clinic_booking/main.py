import sys
import argparse
import os
import logging

import uvicorn
from alembic import command
from alembic.config import Config

from .app import create_app
from .app.cache_checker import check_and_sync_cache
from .app.dependencies import DATABASE_URL, engine, get_redis_client
from .app.models import Base
from .app.slot_cache import KEY_PREFIX

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

app = create_app()

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def start_server():
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", 8000)))


def create_tables():
    print(f"Using database URL: {DATABASE_URL}")
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def alembic_config():
    alembic_cfg = Config()
    alembic_cfg.set_main_option('sqlalchemy.url', DATABASE_URL.replace('%', '%%'))
    alembic_cfg.set_main_option('script_location', MIGRATIONS_DIR)
    return alembic_cfg


def run_migrations(action, revision=None, message=None):
    alembic_cfg = alembic_config()

    if action == "upgrade":
        command.upgrade(alembic_cfg, revision or "head")
    elif action == "downgrade":
        if not revision:
            print("A --revision is required to downgrade the booking schema.")
            return
        command.downgrade(alembic_cfg, revision)
    elif action == "revision":
        if not message:
            print("A --message is required to autogenerate a schema revision.")
            return
        command.revision(alembic_cfg, autogenerate=True, message=message)
    elif action == "current":
        command.current(alembic_cfg)
    else:
        print(f"Unknown migration action: {action}")


def clear_slot_cache():
    redis_client = get_redis_client()
    keys = list(redis_client.scan_iter(match=f"{KEY_PREFIX}:*"))
    if keys:
        redis_client.delete(*keys)
    print(f"Slot cache cleared successfully ({len(keys)} keys).")


def sync_cache():
    fixed = check_and_sync_cache()
    print(f"Cache sync finished, {len(fixed)} stale entries rewritten.")


def main():
    parser = argparse.ArgumentParser(description="Clinic Booking Engine")
    parser.add_argument(
        '--mode',
        type=str,
        choices=['server', 'cache-sync', 'create-tables', 'migrate', 'clear-cache'],
        required=True,
        help="How to run the booking service: 'server' starts the FastAPI app, 'cache-sync' to "
             "re-verify cached slot grids, 'create-tables' to create the database tables, 'migrate' to manage "
             "database migrations, or 'clear-cache' to drop all cached slot grids."
    )

    parser.add_argument(
        '--action',
        type=str,
        choices=['upgrade', 'downgrade', 'revision', 'current'],
        help="Alembic command to run against the booking schema. Required with --mode migrate."
    )

    parser.add_argument(
        '--revision',
        type=str,
        help="Target schema revision; defaults to head for upgrade and is required for downgrade."
    )

    parser.add_argument(
        '--message',
        type=str,
        help="Description of the schema change for the revision action."
    )

    args = parser.parse_args()

    if args.mode == 'server':
        start_server()
    elif args.mode == 'cache-sync':
        sync_cache()
    elif args.mode == 'create-tables':
        create_tables()
    elif args.mode == 'migrate':
        if not args.action:
            print("--mode migrate needs an --action (upgrade, downgrade, revision or current).")
        else:
            run_migrations(args.action, args.revision, args.message)
    elif args.mode == 'clear-cache':
        clear_slot_cache()


if __name__ == "__main__":
    main()

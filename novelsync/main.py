#!/usr/bin/env python3
"""
novelsync - reading progress sync client

Usage:
    python -m novelsync --login          # Log in and store credentials
    python -m novelsync --sync           # Run one full sync
    python -m novelsync --status         # Show auth state and local history
    python -m novelsync --daemon         # Sync periodically until interrupted
    python -m novelsync --logout         # Forget stored credentials
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from .client import AuthenticatedClient
from .config import ClientSettings, get_settings
from .errors import ClientError, SyncError
from .storage import LocalStore
from .sync import ProgressSyncEngine
from .tokens import token_expiry

logger = logging.getLogger('novelsync')


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


async def run_login(client: AuthenticatedClient, email: Optional[str]) -> int:
    email = email or input('Email: ')
    password = getpass.getpass('Password: ')
    try:
        auth = await client.login(email, password)
    except ClientError as e:
        logger.error(f'Login failed: {e}')
        return 1
    user = (auth.user.username or auth.user.email) if auth.user else email
    print(f'Logged in as {user}')
    return 0


async def run_sync(engine: ProgressSyncEngine) -> int:
    await engine.client.refresh_if_needed(trigger='cli')
    try:
        result = await engine.full_sync()
    except (SyncError, ClientError) as e:
        logger.error(f'Sync failed: {e}')
        return 1
    print(
        f'Uploaded {result.uploaded}, downloaded {result.downloaded}, '
        f'merged {result.merged}, failed {result.failed} '
        f'({result.duration_seconds:.2f}s)'
    )
    return 0 if result.is_success else 2


async def run_daemon(engine: ProgressSyncEngine) -> int:
    await engine.client.refresh_if_needed(trigger='launch')
    await engine.start_background_sync()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await engine.stop_background_sync()


def show_status(store: LocalStore, client: AuthenticatedClient) -> int:
    if client.is_authenticated():
        expiry = token_expiry(store.get_access_token())
        print(f'Authenticated (access token expires {expiry:%Y-%m-%d %H:%M:%S} UTC)')
    else:
        print('Not authenticated')

    history = store.all()
    if not history:
        print('No reading history')
        return 0

    print(f'{len(history)} novels:')
    for record in history:
        title = record.novel_title or record.novel_id
        pending = f', {record.unsynced_delta // 1000}s unsynced' if record.unsynced_delta else ''
        print(
            f'  {title}: chapter {record.current_chapter_order}'
            f' ({record.progress_percentage:.0%}), '
            f'{record.total_reading_time // 60000} min read{pending}'
        )
    return 0


async def run(args: argparse.Namespace, settings: ClientSettings) -> int:
    store = LocalStore.from_settings(settings)
    async with AuthenticatedClient(store, settings=settings) as client:
        client.on_session_expired(
            lambda event: print(f'Session expired ({event.reason.value}); run --login again')
        )
        if args.logout:
            client.logout()
            return 0
        if args.login:
            return await run_login(client, args.email)
        if args.status:
            return show_status(store, client)

        engine = ProgressSyncEngine(client, store, settings=settings)
        if args.daemon:
            return await run_daemon(engine)
        return await run_sync(engine)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog='novelsync',
        description='Reading progress sync client',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--login', action='store_true', help='Log in and store credentials')
    mode.add_argument('--logout', action='store_true', help='Forget stored credentials')
    mode.add_argument('--sync', action='store_true', help='Run one full sync (default)')
    mode.add_argument('--status', action='store_true', help='Show auth state and history')
    mode.add_argument('--daemon', action='store_true', help='Sync periodically until interrupted')
    parser.add_argument('--email', default=None, help='Email for --login')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(args.verbose or settings.debug)

    try:
        code = asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        code = 0
    except Exception as e:
        logger.error(f'Fatal error: {e}')
        code = 1
    sys.exit(code)


if __name__ == '__main__':
    main()

"""Command line: log in to a session file or
inspect a saved one."""

import argparse
import asyncio
import getpass
import json
import logging
import os
import sys
from typing import List, Optional

from .client import Client
from .config import ClientConfig, load_config
from .errors import AppError, ConfigError, TwoFactorRequiredError
from .session import SessionState, truncate_header

log = logging.getLogger('instacore')


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s')


async def run_login(
        config: ClientConfig, username: str,
        password: str, totp_seed: str = '',
        code: Optional[str] = None,
        output: Optional[str] = None) -> str:
    client = Client.create(
        username, password, totp_seed=totp_seed,
        config=config,
        code_provider=(lambda ctx: code) if code else None)
    async with client:
        try:
            await client.login()
        except TwoFactorRequiredError as exc:
            ctx = exc.context
            log.error(
                f'Two-factor required'
                f' ({getattr(ctx, "obfuscated_phone", "")});'
                f' pass --code or --totp-seed')
            raise
        return client.save(output)


def describe_session(state: SessionState) -> dict:
    headers = {
        k: truncate_header(v)
        for k, v in sorted(
            state.headers_snapshot().items())}
    return {
        'username': state.username,
        'account_id': state.account_id,
        'device_id': state.identity.device_id,
        'uuid': state.identity.uuid,
        'phone_id': state.identity.phone_id,
        'family_id': state.identity.family_id,
        'user_agent': state.user_agent,
        'rank_token': state.rank_token,
        'token_expiry': state.token_expiry,
        'totp_seed': bool(state.totp_seed),
        'headers': headers,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog='instacore',
        description='Instagram private API session tool')
    parser.add_argument(
        '--config', '-c', default='config.json')
    parser.add_argument(
        '--proxy', '-p', default=None)
    parser.add_argument(
        '--debug', action='store_true')
    sub = parser.add_subparsers(
        dest='command', required=True)

    login = sub.add_parser(
        'login', help='Log in and write a session file')
    login.add_argument('username')
    login.add_argument(
        '--password', default=None,
        help='Defaults to $INSTACORE_PASSWORD')
    login.add_argument('--totp-seed', default='')
    login.add_argument('--code', default=None)
    login.add_argument(
        '--output', '-o', default=None)

    inspect = sub.add_parser(
        'inspect', help='Print a saved session')
    inspect.add_argument('path')

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    config = load_config(args.config)
    overrides = {}
    if args.proxy:
        overrides['proxy'] = args.proxy
    if args.debug:
        overrides['debug'] = True
    if overrides:
        config = config.with_overrides(**overrides)

    try:
        config.validate()
        if args.command == 'inspect':
            state = SessionState.load(args.path)
            print(json.dumps(
                describe_session(state), indent=2))
            return 0

        password = (
            args.password
            or os.environ.get('INSTACORE_PASSWORD')
            or getpass.getpass('Password: '))
        path = asyncio.run(run_login(
            config, args.username, password,
            args.totp_seed, args.code, args.output))
        log.info(f'Session written to {path}')
        return 0
    except ConfigError as exc:
        log.error(f'Config: {exc}')
        return 1
    except (AppError, OSError) as exc:
        log.error(f'{type(exc).__name__}: {exc}')
        return 1


if __name__ == '__main__':
    sys.exit(main())

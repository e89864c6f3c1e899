#!/usr/bin/env python3
"""
Kiss2FA - Encrypted TOTP Vault
Command-line entry point.
"""
import sys
import getpass
import logging
import argparse

from config import Config, build_context
from errors import VaultError
from models import ExportedVault
from service import VaultService
from utils import format_code_list

logger = logging.getLogger(__name__)


def configure_logging(config: Config):
    """Configure root logging from settings."""
    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, config.log_level, logging.INFO),
        handlers=[
            logging.FileHandler(config.log_file),
            logging.StreamHandler()
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Kiss2FA - Encrypted TOTP Vault')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('init-db', help='Initialize the database')
    subparsers.add_parser('register', help='Create an account with an empty vault')

    codes = subparsers.add_parser('codes', help='Show current codes')
    codes.add_argument('--login-id', required=True)
    codes.add_argument('--search', default='', help='Only show accounts matching this name')

    add = subparsers.add_parser('add', help='Add a TOTP account')
    add.add_argument('--login-id', required=True)
    add.add_argument('--name')
    source = add.add_mutually_exclusive_group(required=True)
    source.add_argument('--secret', help='Base32 secret key')
    source.add_argument('--uri', help='otpauth://totp URI')
    add.add_argument('--period', type=int, default=30)
    add.add_argument('--digits', type=int, default=6)
    add.add_argument('--folder', help='Folder ID')

    passwd = subparsers.add_parser('passwd', help='Change the account password')
    passwd.add_argument('--login-id', required=True)

    export = subparsers.add_parser('export', help='Export the encrypted vault')
    export.add_argument('--login-id', required=True)
    export.add_argument('--output', required=True)

    import_ = subparsers.add_parser('import', help='Import an exported vault')
    import_.add_argument('--login-id', required=True)
    import_.add_argument('--input', required=True)

    return parser


def run(args: argparse.Namespace, service: VaultService) -> int:
    """Execute one command; returns the process exit status."""
    if args.command == 'init-db':
        service.storage.init_db()
        print("Database initialized successfully")
        return 0

    if args.command == 'register':
        password = getpass.getpass('Choose a password: ')
        if password != getpass.getpass('Confirm password: '):
            print("Passwords don't match", file=sys.stderr)
            return 1
        user = service.register(password)
        print(f"Account created. Your login ID is: {user.login_id}")
        return 0

    password = getpass.getpass('Password: ')
    user = service.login(args.login_id, password)

    if args.command == 'codes':
        codes = service.codes(user.id)
        if args.search:
            matching = {entry.id for entry in service.get_document(user.id).search(args.search)}
            codes = [item for item in codes if item['id'] in matching]
        print(format_code_list(codes))

    elif args.command == 'add':
        entry = service.add_entry(
            user.id, name=args.name, secret=args.secret, uri=args.uri,
            period=args.period, digits=args.digits, folder_id=args.folder,
        )
        print(f"Added {entry.name}")

    elif args.command == 'passwd':
        new_password = getpass.getpass('New password: ')
        if new_password != getpass.getpass('Confirm new password: '):
            print("New passwords do not match", file=sys.stderr)
            return 1
        service.change_password(user.id, password, new_password)
        print("Password changed successfully")

    elif args.command == 'export':
        exported = service.export_vault(user.id, password)
        with open(args.output, 'w', encoding='utf-8') as fh:
            fh.write(exported.to_json())
        print(f"Vault exported to {args.output}")

    elif args.command == 'import':
        with open(args.input, 'r', encoding='utf-8') as fh:
            exported = ExportedVault.from_json(fh.read())
        import_password = getpass.getpass('Password of the imported vault: ')
        document = service.import_vault(user.id, exported, import_password)
        print(f"Vault imported successfully ({len(document.entries)} entries)")

    service.lock(user.id)
    return 0


def main(argv=None) -> int:
    """Main function to run the CLI."""
    args = build_parser().parse_args(argv)

    try:
        config = Config.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(config)
    context = build_context(config)
    service = VaultService(context)

    try:
        return run(args, service)
    except (VaultError, ValueError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    finally:
        context.storage.close()


if __name__ == '__main__':
    sys.exit(main())

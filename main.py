#!/usr/bin/env python3
"""
Ayerhs admin CLI -- administrative unlock and RSA key tooling.

Usage:
  python main.py unlock user@example.com
  python main.py generate-key --out private.pem
  python main.py public-key --key private.pem
  python main.py encrypt-password --public-key public.pem

Configuration comes from the same environment variables / .env file as the
API (DATABASE_URL, RSA_PRIVATE_KEY_PATH, AES_KEY, AES_IV, DEBUG, ...).
"""

import argparse
import getpass
import sys
from pathlib import Path
from typing import Optional

from auth.crypto import CryptoCore
from auth.notifier import EmailNotifier
from auth.orchestrator import AuthOrchestrator
from auth.otp import OtpEngine
from auth.store import CredentialStore
from core.config import get_settings
from core.errors import AuthError


def _read_file(path: str) -> Optional[str]:
    """Read a PEM file. Resolves symlinks and verifies the path is a regular file."""
    file_path = Path(path).resolve()
    if not file_path.is_file():
        print(f"  [!] '{path}' is not a readable file.", file=sys.stderr)
        return None
    try:
        return file_path.read_text(encoding="utf-8")
    except OSError as e:
        print(f"  [!] Could not read file '{path}': {e}", file=sys.stderr)
        return None


def _private_key(args: argparse.Namespace) -> Optional[str]:
    if args.key:
        return _read_file(args.key)
    pem = get_settings().load_private_key_pem()
    if not pem:
        print("  [!] No private key given. Pass --key or set RSA_PRIVATE_KEY_PATH.", file=sys.stderr)
        return None
    return pem


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_unlock(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = CredentialStore(settings.database_url)
    try:
        orchestrator = AuthOrchestrator(
            settings,
            store,
            CryptoCore(settings),
            OtpEngine(settings, store),
            EmailNotifier(settings),
        )
        result = orchestrator.unlock_account(args.email)
    finally:
        store.close()
    if not result.ok:
        print(f"  [!] No account registered for '{args.email}' (txn {result.txn}).", file=sys.stderr)
        return 1
    print(f"  Account '{args.email}' unlocked (txn {result.txn}).")
    return 0


def cmd_generate_key(args: argparse.Namespace) -> int:
    pem = CryptoCore.generate_private_key_pem(args.bits)
    if args.out:
        out = Path(args.out)
        if out.exists() and not args.force:
            print(f"  [!] '{args.out}' already exists. Use --force to overwrite.", file=sys.stderr)
            return 1
        out.write_text(pem, encoding="utf-8")
        out.chmod(0o600)
        print(f"  Private key written to {args.out}")
    else:
        print(pem, end="")
    return 0


def cmd_public_key(args: argparse.Namespace) -> int:
    pem = _private_key(args)
    if pem is None:
        return 1
    print(CryptoCore.public_key_pem(pem), end="")
    return 0


def cmd_encrypt_password(args: argparse.Namespace) -> int:
    if args.public_key:
        public_pem = _read_file(args.public_key)
    else:
        private_pem = _private_key(args)
        public_pem = CryptoCore.public_key_pem(private_pem) if private_pem else None
    if public_pem is None:
        return 1
    password = args.password if args.password is not None else getpass.getpass("Password: ")
    print(CryptoCore.encrypt_password(password, public_pem))
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ayerhs",
        description="Administrative tooling for the Ayerhs authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py unlock user@example.com
  python main.py generate-key --out private.pem
  python main.py public-key --key private.pem > public.pem
  python main.py encrypt-password --public-key public.pem --password s3cret
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    unlock = sub.add_parser("unlock", help="Clear the lock and failed-attempt count on an account")
    unlock.add_argument("email", help="Email of the account to unlock")
    unlock.set_defaults(func=cmd_unlock)

    gen = sub.add_parser("generate-key", help="Generate an RSA private key (PKCS#8 PEM)")
    gen.add_argument("--out", metavar="PATH", help="Write the key to PATH instead of stdout")
    gen.add_argument("--bits", type=int, default=2048, choices=[2048, 3072, 4096], help="Key size (default: 2048)")
    gen.add_argument("--force", action="store_true", help="Overwrite an existing --out file")
    gen.set_defaults(func=cmd_generate_key)

    pub = sub.add_parser("public-key", help="Print the public key for a private key")
    pub.add_argument("--key", metavar="PATH", help="Private key PEM (default: RSA_PRIVATE_KEY_PATH)")
    pub.set_defaults(func=cmd_public_key)

    enc = sub.add_parser("encrypt-password", help="Encrypt a password the way API clients must")
    enc.add_argument("--public-key", metavar="PATH", help="Public key PEM to encrypt with")
    enc.add_argument("--key", metavar="PATH", help="Private key PEM to derive the public key from")
    enc.add_argument("--password", help="Plaintext password (prompted for when omitted)")
    enc.set_defaults(func=cmd_encrypt_password)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    try:
        return args.func(args)
    except AuthError as e:
        print(f"  [!] {e.message} ({e.error_code}, txn {e.txn})", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

# activation_server/cli/license_codes_cli.py
# Local CLI to prepare the store and seed license codes (uses the configured store directly)
import argparse
import sys

from activation_server.config import Settings
from activation_server.errors import ActivationError
from activation_server.logging_config import configure_logging
from activation_server.store import LicenseStore, create_store
from activation_server.utils.crypto import ResponseSigner, isoformat_utc


def seed_codes(store: LicenseStore, codes: list[str], is_trial: bool = False) -> int:
    created = 0
    for code in codes:
        code = code.strip()
        if not code:
            continue
        record = store.add_code(code, is_trial=is_trial)
        if record is None:
            print("Already exists, skipped:", code)
            continue
        created += 1
        print("License code created:", record.code, "(trial)" if record.is_trial else "")
    return created


def show_code(store: LicenseStore, code: str) -> bool:
    record = store.get_by_code(code)
    if not record:
        print("License code not found")
        return False
    print("Code:        ", record.code)
    print("Used:        ", record.is_used)
    print("Machine ID:  ", record.machine_id or "-")
    print("Activated at:", isoformat_utc(record.activated_at) or "-")
    print("Created at:  ", isoformat_utc(record.created_at) or "-")
    print("Trial:       ", record.is_trial)
    print("Expires at:  ", isoformat_utc(record.trial_expires_at) or "-")
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="activation-codes")
    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("migrate", help="Create or upgrade the license_codes table")

    seed = sub.add_parser("seed", help="Insert unused license codes")
    seed.add_argument("codes", nargs="+", help="License codes to insert")
    seed.add_argument("--trial", action="store_true", help="Tag the codes as trial codes")

    show = sub.add_parser("show", help="Print a license code record")
    show.add_argument("code")

    sub.add_parser("public-key", help="Print the PEM public key clients verify signatures with")
    return parser


def main(argv=None, store: LicenseStore | None = None, settings: Settings | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_format)

    if args.action == "public-key":
        pem = ResponseSigner.from_settings(settings).public_key_pem()
        if not pem:
            print("No signing key configured", file=sys.stderr)
            return 1
        print(pem, end="")
        return 0

    try:
        store = store or create_store(settings)
    except ActivationError as exc:
        print(exc.message, file=sys.stderr)
        return 1

    try:
        if args.action == "migrate":
            store.migrate()
            print("Schema up to date")
        elif args.action == "seed":
            seed_codes(store, args.codes, is_trial=args.trial)
        else:
            if not show_code(store, args.code):
                return 1
    except ActivationError as exc:
        print("Store error:", exc.message, file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
License command line tool

Offline (no database):
    python license_cli.py device-code
    python license_cli.py issue --device-code SRV-AB12-CD34-EF56 --days 365
    python license_cli.py verify --device-code SRV-AB12-CD34-EF56 --auth-code XXXX-...

Database backed:
    python license_cli.py create --device-code SRV-AB12-CD34-EF56 --days 365 --name "Head office"
    python license_cli.py renew --id 3 --days 30
    python license_cli.py delete --id 3
    python license_cli.py list
"""
import argparse
import asyncio
import sys
from typing import Optional, Sequence

from activation import ActivationCodec, expire_time_for
from config import LICENSE_SECRET_KEY
from device_fingerprint import DeviceIdentityCollector, encode_device_code
from license_cache import LicenseStatusCache
from license_service import LicenseService, LicenseError
from models import SessionLocal, init_db, utcnow

CLI_OPERATOR = "cli"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Archive Manager license tool")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("device-code", help="Print this host's device code")

    issue = sub.add_parser("issue", help="Compute an activation code offline")
    issue.add_argument("--device-code", required=True)
    issue.add_argument("--days", type=int, required=True)

    verify = sub.add_parser("verify", help="Check an activation code against a device code")
    verify.add_argument("--device-code", required=True)
    verify.add_argument("--auth-code", required=True)

    create = sub.add_parser("create", help="Create a license in the database")
    create.add_argument("--device-code", required=True)
    create.add_argument("--days", type=int, required=True)
    create.add_argument("--name", default=None)

    renew = sub.add_parser("renew", help="Extend a license from its current expiry")
    renew.add_argument("--id", type=int, required=True)
    renew.add_argument("--days", type=int, required=True)

    delete = sub.add_parser("delete", help="Delete a license")
    delete.add_argument("--id", type=int, required=True)

    sub.add_parser("list", help="List all licenses")
    return parser


def cmd_device_code(args) -> int:
    signals = asyncio.run(DeviceIdentityCollector().collect())
    code = encode_device_code(signals)
    print(f"Device code: {code.device_code}")
    print(f"Method:      {code.method}")
    if code.warning:
        print(f"Warning:     {code.warning}")
    return 0


def cmd_issue(args, codec: ActivationCodec) -> int:
    try:
        auth_code = codec.issue(args.device_code.strip().upper(), args.days)
    except ValueError as e:
        print(f"[X] {e}")
        return 1
    print(f"Activation code: {auth_code}")
    print(f"Valid until:     {expire_time_for(args.days, utcnow()).isoformat()} (UTC, if created now)")
    return 0


def cmd_verify(args, codec: ActivationCodec) -> int:
    result = codec.verify(args.device_code.strip().upper(), args.auth_code)
    if not result.valid:
        print("[X] Activation code is not valid for this device code")
        return 1
    print(f"[OK] Valid activation code ({result.duration_days} days)")
    return 0


def cmd_database(args, service: LicenseService) -> int:
    init_db()
    db = SessionLocal()
    try:
        if args.command == "create":
            lic = service.create_license(db, args.device_code, args.days, args.name, operator=CLI_OPERATOR)
            print(f"[OK] License {lic.id} created")
            print(f"Device code:     {lic.device_code}")
            print(f"Activation code: {lic.auth_code}")
            print(f"Expires:         {lic.expire_time.isoformat()}")
        elif args.command == "renew":
            lic = service.renew_license(db, args.id, args.days, operator=CLI_OPERATOR)
            print(f"[OK] License {lic.id} now expires {lic.expire_time.isoformat()}")
        elif args.command == "delete":
            deleted = service.delete_license(db, args.id, operator=CLI_OPERATOR)
            print(f"[OK] License {deleted['id']} for {deleted['deviceCode']} deleted")
        elif args.command == "list":
            licenses = service.list_licenses(db)
            if not licenses:
                print("No licenses")
            for lic in licenses:
                state = "active" if lic["isActive"] else "expired"
                print(f"{lic['id']:>4}  {lic['deviceCode']:<20}  {lic['expireTime']}  {state:<8} {lic['name'] or ''}")
        return 0
    except LicenseError as e:
        print(f"[X] {e.message}")
        return 1
    finally:
        db.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    codec = ActivationCodec(LICENSE_SECRET_KEY)

    if args.command == "device-code":
        return cmd_device_code(args)
    if args.command == "issue":
        return cmd_issue(args, codec)
    if args.command == "verify":
        return cmd_verify(args, codec)
    return cmd_database(args, LicenseService(codec, LicenseStatusCache()))


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta

import jwt

ROLES = ("admin", "service")


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate a JWT for the Follow-up Engine API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True, help="Operator or scheduler identity.")
    parser.add_argument("--roles", required=True, help=f"Comma-separated, any of: {','.join(ROLES)}")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(ROLES))
    if unknown:
        print(f"unknown roles: {', '.join(unknown)}", file=sys.stderr)
        return 2

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))
    return 0


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import jwt

from pipeline_crm.app.auth import STAFF_ROLES


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a bearer token for the Pipeline CRM API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True, help="Recorded as created_by on timeline events.")
    parser.add_argument(
        "--roles",
        required=True,
        help=f"Comma-separated roles from: {', '.join(STAFF_ROLES)}.",
    )
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip().lower() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(STAFF_ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()

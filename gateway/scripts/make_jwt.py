from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict

import jwt  # type: ignore[import]

# Ensure repository root is on sys.path so `import gateway.*` works when running this file directly
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

# Provide a default signing secret for local testing if not set
os.environ.setdefault("APP_JWT_SECRET", "dev-secret")

from gateway.app import config


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Generate a signed access token for local testing")
    p.add_argument("--role", default="user", choices=["user", "admin"], help="Role claim")
    p.add_argument("--id", dest="identity_id", default="user-1", help="Identity id claim")
    p.add_argument("--email", default="user@example.com", help="Email claim")
    p.add_argument(
        "--ttl",
        type=int,
        default=3600,
        help="Token TTL in seconds (default: 3600); a negative value yields an already expired token",
    )
    p.add_argument("--not-before", type=int, default=0, help="Seconds until the token becomes valid")
    return p.parse_args()


def build_payload(identity_id: str, email: str, role: str, ttl: int, not_before: int = 0) -> Dict[str, Any]:
    issued_at = int(time.time())
    payload: Dict[str, Any] = {
        "id": identity_id,
        "email": email,
        "role": role,
        "iat": issued_at,
        "exp": issued_at + int(ttl),
    }
    if not_before:
        payload["nbf"] = issued_at + not_before
    if config.APP_JWT_ISSUER:
        payload["iss"] = config.APP_JWT_ISSUER
    if config.APP_JWT_AUDIENCE:
        payload["aud"] = config.APP_JWT_AUDIENCE
    return payload


def main() -> int:
    args = _parse_args()

    secret = config.APP_JWT_SECRET or os.environ.get("APP_JWT_SECRET")
    if not secret:
        print("ERROR: APP_JWT_SECRET must be set in env or gateway.app.config")
        return 1

    payload = build_payload(args.identity_id, args.email, args.role, args.ttl, args.not_before)
    token = jwt.encode(payload, secret, algorithm=config.APP_JWT_ALGORITHM)
    print(token)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

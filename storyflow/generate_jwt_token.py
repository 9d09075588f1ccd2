#!/usr/bin/env python3
"""
JWT Token Generator for the cron / admin endpoints
Usage: python -m storyflow.generate_jwt_token [--count N]

Tokens are single-use (JTI replay protection), so a cron job mints one per call.
"""
import argparse
import os
import uuid
from datetime import datetime, timezone, timedelta

import jwt
from dotenv import load_dotenv

from storyflow.core.config import settings

load_dotenv()

TOKEN_TTL_MINUTES = int(os.getenv("TOKEN_TTL_MINUTES", "5"))


def generate_jwt_token(ttl_minutes: int = TOKEN_TTL_MINUTES) -> str:
    """Generate a fresh JWT token for authentication"""
    now = datetime.now(timezone.utc)

    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "jti": uuid.uuid4().hex
    }

    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def main():
    parser = argparse.ArgumentParser(description="Mint service JWTs for the storyflow API")
    parser.add_argument("--count", type=int, default=1, help="Number of tokens to mint")
    parser.add_argument("--ttl", type=int, default=TOKEN_TTL_MINUTES, help="Token lifetime in minutes")
    args = parser.parse_args()

    for _ in range(args.count):
        print(generate_jwt_token(args.ttl))


if __name__ == "__main__":
    main()

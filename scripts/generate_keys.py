#!/usr/bin/env python3
"""
Ensure the record store holds an active signing key.

Run once at setup: creates an RS256 key pair when none is active. With
``--rotate`` a new key is created unconditionally; the previous one is
retired by the record store and stays available for verification.
"""

import argparse
import asyncio
import json
import sys

from service_identity.app.adapters.record_store import RecordStoreClient
from service_identity.app.keys.directory import KeyDirectory
from shared.config import get_config
from shared.errors import IdentityError
from shared.logging import configure_logging


async def ensure_active_key(store: RecordStoreClient, algorithm: str, rotate: bool) -> dict:
    """Return a summary of the active key, creating one when needed."""
    directory = KeyDirectory(store, algorithm=algorithm, auto_create=False)

    if not rotate:
        existing = await store.get_active_key_pair()
        if existing is not None:
            return {"created": False, "kid": existing.kid, "algorithm": existing.algorithm}

    key_pair = await directory.rotate()
    return {"created": True, "kid": key_pair.kid, "algorithm": key_pair.algorithm}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the active signing key if missing.")
    parser.add_argument("--rotate", action="store_true", help="Create a new active key even if one exists")
    parser.add_argument("--record-store-url", default=None, help="Override IDENTITY_RECORD_STORE_URL")
    return parser.parse_args()


async def _main() -> int:
    args = _parse_args()
    overrides = {"record_store_url": args.record_store_url} if args.record_store_url else {}
    config = get_config("auth", 8010, **overrides)
    configure_logging("auth.setup", config.log_level)

    store = RecordStoreClient.from_config(config)
    try:
        summary = await ensure_active_key(store, config.signing_algorithm, args.rotate)
    except IdentityError as e:
        print(json.dumps({"error": e.code, "message": e.message}), file=sys.stderr)
        return 1
    finally:
        await store.close()

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(_main()))

#!/usr/bin/env python3
"""Emit the environment setting that enables an admin API key."""

from __future__ import annotations

import argparse
import hashlib
import json
import secrets


def render_env(*, api_keys: list[str]) -> str:
    hashes = [hashlib.sha256(key.encode("utf-8")).hexdigest() for key in api_keys]
    return f"MI_ADMIN_API_KEY_HASHES='{json.dumps(hashes)}'"


def main() -> None:
    parser = argparse.ArgumentParser(description="Emit MI_ADMIN_API_KEY_HASHES for one or more admin keys.")
    parser.add_argument(
        "--key",
        action="append",
        dest="keys",
        help="Existing admin key to hash (repeatable). A random key is generated when omitted.",
    )
    args = parser.parse_args()

    keys = args.keys or [secrets.token_urlsafe(32)]
    if not args.keys:
        print(f"# generated admin key (send it as X-API-Key): {keys[0]}")
    print(render_env(api_keys=keys))


if __name__ == "__main__":
    main()

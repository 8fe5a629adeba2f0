from __future__ import annotations

import asyncio
import base64
import hmac

import bcrypt


BCRYPT_ROUNDS = 10
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def is_bcrypt_hash(password_hash: str) -> bool:
    return password_hash.startswith(_BCRYPT_PREFIXES)


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    # Older rows hold base64-encoded passwords; they verify once and are upgraded on login.
    if not password_hash:
        return False
    if is_bcrypt_hash(password_hash):
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False
    legacy = base64.b64encode(password.encode("utf-8")).decode("ascii")
    return hmac.compare_digest(legacy, password_hash)


def needs_upgrade(password_hash: str | None) -> bool:
    return bool(password_hash) and not is_bcrypt_hash(password_hash)


async def hash_password_async(password: str) -> str:
    # bcrypt is CPU bound; keep it off the event loop.
    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(password: str, password_hash: str | None) -> bool:
    return await asyncio.to_thread(verify_password, password, password_hash)

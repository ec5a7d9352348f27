"""Decoy resource templates for honeypots.

Every value generated here is synthetic.  Credentials are random tokens
that authenticate nowhere; they exist so that their later appearance in a
request is an unambiguous sign of an attacker replaying harvested data.
"""
from __future__ import annotations

import enum
import random
import string
from typing import Any


class HoneypotKind(enum.StrEnum):
    """Decoy templates."""

    DATABASE = "database"
    RESOURCE = "resource"
    GENERIC = "generic"


_ENDPOINTS: dict[HoneypotKind, tuple[str, ...]] = {
    HoneypotKind.DATABASE: (
        "/api/admin/users",
        "/api/database/backup",
        "/api/config/settings",
        "/api/auth/credentials",
    ),
    HoneypotKind.RESOURCE: (
        "/api/export/large",
        "/api/reports/generate",
        "/api/images/highres",
        "/api/data/stream",
    ),
    HoneypotKind.GENERIC: (
        "/admin/login.php",
        "/phpmyadmin/",
        "/wp-admin/",
        "/backup.zip",
        "/config.json",
    ),
}

_AGGRESSIVE_ENDPOINTS: tuple[str, ...] = (
    "/.env",
    "/api/keys/master",
    "/internal/credentials.json",
    "/db/dump.sql",
)

_FIRST_NAMES = ("alice", "bob", "carol", "dave", "erin", "frank", "grace", "heidi")
_ROLES = ("admin", "operator", "analyst", "viewer")


def _token(rng: random.Random, length: int) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(rng.choice(alphabet) for _ in range(length))


def fake_credentials(rng: random.Random) -> list[dict[str, str]]:
    return [
        {"username": f"{role}_{_token(rng, 4).lower()}", "password": _token(rng, 16)}
        for role in ("admin", "backup", "svc_reporting")
    ]


def fake_users(rng: random.Random, count: int = 5) -> list[dict[str, Any]]:
    users = []
    for i in range(count):
        name = rng.choice(_FIRST_NAMES)
        users.append({
            "id": 1000 + i,
            "username": f"{name}{rng.randint(10, 99)}",
            "email": f"{name}.{_token(rng, 5).lower()}@example.invalid",
            "role": rng.choice(_ROLES),
            "password_hash": "$2b$12$" + _token(rng, 53),
        })
    return users


def fake_schema() -> dict[str, list[str]]:
    return {
        "users": ["id", "username", "email", "password_hash", "role", "created_at"],
        "sessions": ["id", "user_id", "token", "expires_at"],
        "payments": ["id", "user_id", "card_last4", "amount", "status"],
        "audit_log": ["id", "actor", "action", "created_at"],
    }


def fake_config(rng: random.Random) -> dict[str, Any]:
    return {
        "database": {
            "host": f"db-{_token(rng, 6).lower()}.internal",
            "port": 5432,
            "user": "app_rw",
            "password": _token(rng, 20),
        },
        "api_key": "sk_live_" + _token(rng, 32),
        "jwt_secret": _token(rng, 48),
        "debug": False,
    }


def fake_system_info(rng: random.Random) -> dict[str, Any]:
    return {
        "hostname": f"prod-web-{rng.randint(1, 24):02d}",
        "os": "Ubuntu 20.04.6 LTS",
        "kernel": "5.4.0-173-generic",
        "services": ["nginx/1.18.0", "postgresql/12.17", "redis/5.0.7"],
    }


def build_decoys(
    kind: HoneypotKind,
    *,
    aggressive: bool = False,
    rng: random.Random | None = None,
) -> tuple[tuple[str, ...], dict[str, Any]]:
    """Return ``(endpoints, synthetic data)`` for a honeypot of *kind*."""
    rng = rng or random.Random()
    endpoints = _ENDPOINTS[kind]
    if kind is HoneypotKind.DATABASE:
        data: dict[str, Any] = {
            "schema": fake_schema(),
            "users": fake_users(rng),
            "settings": fake_config(rng),
        }
    elif kind is HoneypotKind.RESOURCE:
        data = {
            "export_rows": rng.randint(500_000, 2_000_000),
            "report_queue": [f"rpt-{_token(rng, 8).lower()}" for _ in range(3)],
        }
    else:
        data = {"system": fake_system_info(rng), "config": fake_config(rng)}

    if aggressive:
        endpoints = endpoints + _AGGRESSIVE_ENDPOINTS
        data = {
            **data,
            "credentials": fake_credentials(rng),
            "config": fake_config(rng),
            "users": data.get("users") or fake_users(rng, count=8),
        }
    return endpoints, data

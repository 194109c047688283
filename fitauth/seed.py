"""Demo accounts for local development and tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from fitauth.config import Role
from fitauth.logging import get_logger
from fitauth.service.runtime import Runtime

logger = get_logger(__name__)


@dataclass(frozen=True)
class SeedUser:
    email: str
    password: str
    name: str
    role: str
    phone: Optional[str] = None


DEFAULT_SEED_USERS = (
    SeedUser("trainer@test.com", "123456", "Test Trainer", Role.TRAINER.value),
    SeedUser("client@test.com", "123456", "Test Client", Role.CLIENT.value),
    SeedUser("admin@test.com", "admin123", "Platform Admin", Role.ADMIN.value),
)


def seed_users(
    runtime: Runtime,
    users: Iterable[SeedUser] = DEFAULT_SEED_USERS,
    *,
    dry_run: bool = False,
) -> List[dict]:
    """Create any missing demo accounts; existing emails are left untouched.

    Goes straight to the store so ADMIN accounts can be created, which
    self-registration never allows.
    """
    results: List[dict] = []
    for seed in users:
        existing = runtime.store.get_user_by_email(seed.email)
        if existing:
            results.append({"email": seed.email, "user_id": existing.id, "status": "exists"})
            continue
        if dry_run:
            results.append({"email": seed.email, "user_id": None, "status": "dry_run"})
            continue
        user = runtime.store.create_user(
            seed.email,
            runtime.credentials.hash_password(seed.password),
            seed.name,
            role=seed.role,
            phone=seed.phone,
        )
        logger.info("seed_user_created", user_id=user.id, role=user.role)
        results.append({"email": seed.email, "user_id": user.id, "status": "created"})
    return results

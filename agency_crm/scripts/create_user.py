"""
Bootstrap script — creates a login-capable user (typically the first ADMIN).

Usage:
    uv run python -m agency_crm.scripts.create_user
"""

import asyncio
import getpass
import uuid

from sqlalchemy import select

from agency_crm.core.database import async_session_factory, engine
from agency_crm.core.security import hash_password
from agency_crm.models.user import User, UserRole, UserStatus


async def create_user() -> None:
    async with async_session_factory() as session:
        # ── Collect input ────────────────────────────────────────────
        print("\n🔧  Agency CRM — User Setup\n")
        email = input("  Email:     ").strip().lower()
        full_name = input("  Full name: ").strip()
        role = input("  Role [ADMIN]: ").strip().upper() or UserRole.ADMIN.value
        password = getpass.getpass("  Password:  ")
        confirm = getpass.getpass("  Confirm:   ")

        if password != confirm:
            print("\n❌  Passwords do not match.")
            await engine.dispose()
            return

        if not email or not full_name or not password:
            print("\n❌  All fields are required.")
            await engine.dispose()
            return

        if role not in {r.value for r in UserRole}:
            print(f"\n❌  Unknown role '{role}'.")
            await engine.dispose()
            return

        # ── Check for existing user ──────────────────────────────────
        existing = (
            await session.execute(select(User).where(User.email == email))
        ).scalar_one_or_none()

        if existing:
            print(f"\n❌  User with email '{email}' already exists.")
            await engine.dispose()
            return

        user = User(
            id=uuid.uuid4(),
            email=email,
            password_hash=hash_password(password),
            full_name=full_name,
            role=role,
            status=UserStatus.ACTIVE,
        )
        session.add(user)
        await session.commit()

        print("\n✅  User created successfully!")
        print(f"    ID:    {user.id}")
        print(f"    Email: {user.email}")
        print(f"    Role:  {user.role}")
        print("\n   You can now log in via POST /api/auth/login\n")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(create_user())

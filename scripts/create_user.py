#!/usr/bin/env python3
"""
Create a dashboard user - used to bootstrap the first FOUNDER account.

Usage: python scripts/create_user.py <username> <password> <role> <display_name...>
"""

import asyncio
import sys

from sqlalchemy import select

from opsdesk.api.auth import hash_password
from opsdesk.core.database import close_db, get_db_session, init_db
from opsdesk.core.models import User, UserRole


async def create_user(username: str, password: str, role: UserRole, display_name: str) -> bool:
    """Insert a user, creating tables first. False if the username is taken."""
    await init_db()
    try:
        async with get_db_session() as db:
            username = username.strip().lower()
            existing = await db.execute(select(User.id).where(User.username == username))
            if existing.scalar_one_or_none() is not None:
                print(f"Error: User '{username}' already exists")
                return False

            user = User(
                username=username,
                display_name=display_name,
                role=role,
                password_hash=hash_password(password),
                is_active=True,
            )
            db.add(user)
            await db.flush()

            print("User created successfully:")
            print(f"  ID:           {user.id}")
            print(f"  Username:     {user.username}")
            print(f"  Display Name: {user.display_name}")
            print(f"  Role:         {user.role.value}")
            return True
    finally:
        await close_db()


if __name__ == "__main__":
    roles = ", ".join(r.value for r in UserRole)
    if len(sys.argv) < 5:
        print("Usage: python create_user.py <username> <password> <role> <display_name>")
        print(f"Roles: {roles}")
        sys.exit(1)

    username, password, role_name = sys.argv[1:4]
    display_name = " ".join(sys.argv[4:])
    try:
        role = UserRole(role_name.upper())
    except ValueError:
        print(f"Error: Invalid role {role_name}. Must be one of: {roles}")
        sys.exit(1)

    success = asyncio.run(create_user(username, password, role, display_name))
    sys.exit(0 if success else 1)

"""Utility to seed or update user account passwords for local development."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure the project root is on sys.path so ``barbershop`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from barbershop import create_app
from barbershop.extensions import db
from barbershop.models import AuthAccount, Barber, User

ROLES = ["client", "barber", "admin"]


def set_password(email: str, password: str, role: str = "client", name: str | None = None) -> None:
    app = create_app()

    with app.app_context():
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(name=name or f"{role.title()} User", email=email, role=role)
            db.session.add(user)
            db.session.flush()
            print(f"Created new {role} user: {email}")
        elif user.role != role:
            print(f"Updating user role from '{user.role}' to '{role}'")
            user.role = role

        # Barber logins need a barber profile to own a queue.
        if role == "barber" and Barber.query.filter_by(user_id=user.user_id).first() is None:
            db.session.add(Barber(name=user.name, user_id=user.user_id))
            print(f"Created barber profile for: {email}")

        account = db.session.get(AuthAccount, user.user_id)
        if account is None:
            account = AuthAccount(user_id=user.user_id)
            db.session.add(account)

        account.password_hash = generate_password_hash(password)
        db.session.commit()

        print(f"Password for {role} user '{email}' has been set successfully.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Set a user password for local testing.")
    parser.add_argument("email", help="User email address")
    parser.add_argument("password", help="Plain-text password to hash and store")
    parser.add_argument("--role", choices=ROLES, default="client", help="User role (default: client)")
    parser.add_argument("--name", help="Display name for a new user")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    set_password(args.email, args.password, args.role, args.name)


if __name__ == "__main__":
    main()

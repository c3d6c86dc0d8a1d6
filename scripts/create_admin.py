"""One-time bootstrap script to create the first Admin user.

Usage:
  python scripts/create_admin.py --username admin --email admin@example.com --password Secret123
Or provide via env: ADMIN_USERNAME, ADMIN_EMAIL, ADMIN_PASSWORD
"""
import os
import argparse
from getpass import getpass

from obatku_core.app.db import SessionLocal, create_db_and_tables
from obatku_core.app import models
from obatku_core.app.security import get_password_hash, PasswordPolicy


def create_admin(db, username: str, email: str, password: str, full_name: str = 'Administrator'):
    """Returns the new user, or None when the username is taken."""
    existing = db.query(models.User).filter(models.User.username == username).first()
    if existing:
        return None
    ok, errors = PasswordPolicy.validate(password)
    if not ok:
        raise ValueError('; '.join(errors))
    user = models.User(
        full_name=full_name, email=email, username=username,
        password_hash=get_password_hash(password), role='Admin',
    )
    db.add(user)
    db.commit()
    return user


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--username')
    parser.add_argument('--email')
    parser.add_argument('--password')
    parser.add_argument('--full-name', default='Administrator')
    args = parser.parse_args()

    username = args.username or os.getenv('ADMIN_USERNAME')
    email = args.email or os.getenv('ADMIN_EMAIL')
    password = args.password or os.getenv('ADMIN_PASSWORD')
    if not username:
        username = input('Username: ').strip()
    if not email:
        email = input('Email: ').strip()
    if not password:
        password = getpass('Password: ')

    create_db_and_tables()
    db = SessionLocal()
    try:
        user = create_admin(db, username, email, password, args.full_name)
        if user is None:
            print('User already exists:', username)
            return
        print('Created Admin user:', username)
    except ValueError as e:
        print('Password rejected:', e)
    finally:
        db.close()


if __name__ == '__main__':
    main()

#!/usr/bin/env python3
"""
Recover admin access when nobody can log in to manage licenses.

    python reset_admin.py [username] [password]

Unlocks the account, restores the admin role and sets the password
(default admin/admin, to be changed at next login).
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from sqlalchemy.exc import SQLAlchemyError

from auth import get_password_hash, record_login_attempt
from models import SessionLocal, User, init_db


def reset_admin(username: str = "admin", password: str = "admin") -> bool:
    init_db()
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.username == username).first()
        if user is None:
            print(f"[!] No user {username}, creating it")
            user = User(username=username, full_name="Administrator")
            db.add(user)

        user.password_hash = get_password_hash(password)
        user.role = "admin"
        user.is_active = True
        user.must_change_password = True
        # A successful attempt clears the failure counter and the lock
        record_login_attempt(db, user, succeeded=True)
    except SQLAlchemyError as e:
        db.rollback()
        print(f"[X] Could not reset {username}: {e}")
        return False
    finally:
        db.close()

    print(f"[OK] {username} unlocked, password reset. Change it after logging in.")
    return True


if __name__ == "__main__":
    sys.exit(0 if reset_admin(*sys.argv[1:3]) else 1)

import os
import sys
import argparse
import logging

# Ensure project root is on sys.path
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if BASE_DIR not in sys.path:
    sys.path.insert(0, BASE_DIR)

from campus_admin import create_app, db
from campus_admin.models import User
from sqlalchemy import select
from werkzeug.security import generate_password_hash

logger = logging.getLogger(__name__)

ROLES = ("admin", "clerk", "teacher", "student")


def set_role(username, role=None, root=None, password=None, create=False):
    """Assign role and/or root privilege to a user; optionally create the account."""
    app = create_app()
    with app.app_context():
        u = db.session.execute(select(User).filter_by(username=username)).scalars().first()
        if not u:
            if not create:
                logger.error("User '%s' not found.", username)
                return False
            if not password:
                logger.error("A password is required to create '%s'.", username)
                return False
            u = User(username=username, full_name=username, role=role or "student", is_root=False)
            db.session.add(u)
            logger.info("Creating user '%s'.", username)
        old_role, old_root = u.role, bool(u.is_root)
        if role:
            u.role = role
        if root is not None:
            u.is_root = root
        if password:
            u.password_hash = generate_password_hash(password)
        db.session.commit()
        logger.info(
            "Updated '%s': role %s -> %s, root %s -> %s.",
            username, old_role, u.role, old_root, bool(u.is_root),
        )
        return True


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    parser = argparse.ArgumentParser(description="Set a user's role and root privilege by username.")
    parser.add_argument("--username", required=True, help="Username of the user")
    parser.add_argument("--role", choices=ROLES, help="Role to assign")
    root_group = parser.add_mutually_exclusive_group()
    root_group.add_argument("--root", dest="root", action="store_true", default=None,
                            help="Grant root administrator privilege")
    root_group.add_argument("--no-root", dest="root", action="store_false", help="Revoke root privilege")
    parser.add_argument("--password", help="Set (or, with --create, initialise) the password")
    parser.add_argument("--create", action="store_true", help="Create the user if it does not exist")
    args = parser.parse_args()

    ok = set_role(args.username, role=args.role, root=args.root, password=args.password, create=args.create)
    sys.exit(0 if ok else 1)

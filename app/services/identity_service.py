"""Identity service — user lookup/creation for the webhook processor.

The processor only needs three things from the identity store: find a user
by email, create one with a password, and update its metadata. Store errors
surface as DependencyFailure so the gateway retries the delivery.
"""

import logging
import secrets
import string

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import generate_password_hash

from app.errors import DependencyFailure
from app.extensions import db
from app.models.user import User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8

_REQUIRED_CLASSES = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
)


def generate_temp_password(length=12):
    """Random mixed-case alphanumeric password.

    Always contains at least one uppercase letter, one lowercase letter and
    one digit; the guaranteed characters are shuffled into random positions.
    """
    length = max(int(length), MIN_PASSWORD_LENGTH)
    rng = secrets.SystemRandom()
    alphabet = string.ascii_letters + string.digits

    chars = [rng.choice(charset) for charset in _REQUIRED_CLASSES]
    chars += [rng.choice(alphabet) for _ in range(length - len(chars))]
    rng.shuffle(chars)
    return "".join(chars)


def find_user_by_email(email):
    """Case-insensitive lookup. Returns the User or None."""
    if not email:
        return None
    try:
        return User.query.filter(
            func.lower(User.email) == email.strip().lower()
        ).first()
    except SQLAlchemyError as e:
        raise DependencyFailure(f"user lookup failed: {e}") from e


def create_user(email, password, full_name=None, metadata=None):
    """Create a login. Returns (user, created).

    If a concurrent request created the same email first, the unique
    constraint rejects our insert and the existing user is returned with
    created=False.
    """
    email = email.strip().lower()
    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name or email,
        user_metadata=dict(metadata or {}),
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = find_user_by_email(email)
        if existing is None:
            raise DependencyFailure(f"could not create user {email}")
        logger.info(f"User {email} was created concurrently, reusing it")
        return existing, False
    except SQLAlchemyError as e:
        db.session.rollback()
        raise DependencyFailure(f"user create failed: {e}") from e

    logger.info(f"Created user {user.id} for {email}")
    return user, True


def update_user_metadata(user, **metadata):
    """Merge keys into the user's metadata (JSON column is replaced whole)."""
    merged = dict(user.user_metadata or {})
    merged.update(metadata)
    user.user_metadata = merged
    db.session.flush()
    return user

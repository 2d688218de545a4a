"""
Extension instances shared by the app factory, models and blueprints.

Bound in create_app() via init_app(). The limiter has no default limits;
each CAKTO route declares its own from config, and its storage backend
comes from RATELIMIT_STORAGE_URI.
"""

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
limiter = Limiter(key_func=get_remote_address, default_limits=[])

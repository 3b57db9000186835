"""Flask extensions shared by the license portal (bound in ``create_app``)."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

db = SQLAlchemy()
csrf = CSRFProtect()
# No global limit: only the customer-facing checkout routes declare one.
limiter = Limiter(get_remote_address, storage_uri="memory://", default_limits=[])

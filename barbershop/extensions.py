"""Flask extensions, bound to the app inside ``create_app``."""
from __future__ import annotations

from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
cors = CORS()

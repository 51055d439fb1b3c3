# Overview: Flask extension instances for the store handle and migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Unbound until create_app() calls init_app; each app gets its own engine and
# scoped session, so there is no process-wide connection state.
db = SQLAlchemy()
migrate = Migrate()

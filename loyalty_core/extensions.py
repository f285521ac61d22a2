"""
Flask extensions initialization.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Database
db = SQLAlchemy()

# Migrations
migrate = Migrate()

# Key under which the per-app KeyedLockRegistry lives in app.extensions
LOCKS_EXTENSION_KEY = 'loyalty_core.locks'

# Key under which the app's DeliveryTransport lives in app.extensions
TRANSPORT_EXTENSION_KEY = 'loyalty_core.transport'
